"""Job: ReanalyzeDocument"""
import logging
from complitrack.celery_app import celery_app
from complitrack.core.errors import NotFoundFailure
from complitrack.services.tasks import default_service

logger = logging.getLogger(__name__)


@celery_app.task(name="complitrack.jobs.analyze_document.reanalyze_document")
def reanalyze_document(document_id: int):
    """保存済みドキュメントを再解析（アップロード後の手動再実行用）"""
    try:
        document = default_service().reanalyze_document(document_id)
    except NotFoundFailure:
        logger.warning(f"Document not found: {document_id}")
        return None
    except Exception as e:
        logger.error(f"Error in reanalyze_document: {e}", exc_info=True)
        return None

    record = document.analysis_record
    return {
        "document_id": document.id,
        "analysis_success": record.analysis_success if record else False,
    }
