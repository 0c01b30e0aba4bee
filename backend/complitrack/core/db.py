"""DBセッション管理"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from complitrack.core.config import settings

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)

# ストアが返すオブジェクトはセッション終了後も参照するため expire しない
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

Base = declarative_base()
