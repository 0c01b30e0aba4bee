"""Tests for the HTTP router and error mapping."""
import asyncio
import time
from datetime import timedelta

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from complitrack.api.tasks import get_engine, get_service, install_error_handlers, router


class SlowAnalyzer:
    """解析に時間のかかるモデルの代わり"""

    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay

    def analyze(self, data, media_type, context=None):
        time.sleep(self.delay)
        return self.inner.analyze(data, media_type, context)


def build_app(service, lifecycle):
    app = FastAPI()
    app.include_router(router)
    install_error_handlers(app)
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_engine] = lambda: lifecycle
    return app


@pytest.fixture
def client(service, lifecycle):
    return TestClient(build_app(service, lifecycle))


def as_user(user):
    return {"X-User-Id": str(user.id)}


class TestTaskEndpoints:
    def test_create(self, client, clock, alice):
        response = client.post("/tasks", json={
            "name": "ROC AOC-4",
            "description": "Annual financial statements",
            "priority": "critical",
            "category": "ROC",
            "due_date": (clock() + timedelta(days=2)).isoformat(),
            "recurring_frequency": "yearly",
            "assignee": "Alice",
        })

        assert response.status_code == 201
        body = response.json()
        assert body["task"]["status"] == "open"
        assert body["task"]["assignee"] == {"resolved": alice.id}
        assert body["email_sent"] is True

    def test_create_invalid(self, client):
        response = client.post("/tasks", json={"name": "x", "priority": "urgent"})
        assert response.status_code == 400
        assert "field" in response.json()["details"]

    def test_invalid_enum_details(self, client, make_task):
        task = make_task()
        response = client.patch(f"/tasks/{task.id}", json={"priority": "urgent"})
        assert response.status_code == 400
        details = response.json()["details"]
        assert details["field"] == "priority"
        assert details["allowed"] == ["low", "medium", "high", "critical"]
        assert details["provided"] == "urgent"

    def test_update_and_history(self, client, make_task, alice):
        task = make_task(assignee_user=alice)

        response = client.patch(f"/tasks/{task.id}", json={"status": "completed"}, headers={"X-User-Id": str(alice.id)})
        assert response.status_code == 200
        assert response.json()["changed_fields"] == {"status": {"from": "open", "to": "completed"}}

        history = client.get(f"/tasks/{task.id}/history").json()
        assert history["total_entries"] == 1
        assert history["history"][0]["changed_by"] == alice.id

    def test_update_without_changes(self, client, make_task):
        task = make_task()
        response = client.patch(f"/tasks/{task.id}", json={"status": "open"})
        assert response.status_code == 200
        assert response.json()["message"] == "No changes detected"

    def test_not_found(self, client):
        assert client.get("/tasks/4040").status_code == 404

    def test_access_denied(self, client, make_task, alice, bob):
        task = make_task(assignee_user=alice)
        response = client.get(f"/tasks/{task.id}/assessment", headers={"X-User-Id": str(bob.id)})
        assert response.status_code == 403

    def test_unknown_actor(self, client, make_task):
        task = make_task()
        assert client.get(f"/tasks/{task.id}", headers={"X-User-Id": "777"}).status_code == 403

    def test_list_only_visible_tasks(self, client, make_task, alice, bob):
        make_task(name="mine", assignee_user=alice)
        make_task(name="bob's", assignee_user=bob)
        make_task(name="closing", closure_rights_email="alice@example.com")

        body = client.get("/tasks", headers=as_user(alice)).json()

        assert {task["name"] for task in body["tasks"]} == {"mine", "closing"}
        assert body["total_tasks"] == 2

    def test_list_pages_newest_first(self, client, make_task, admin):
        for i in range(3):
            make_task(name=f"task {i}")

        body = client.get("/tasks", params={"page": 2, "limit": 2}, headers=as_user(admin)).json()

        assert (body["page"], body["limit"], body["total_pages"], body["total_tasks"]) == (2, 2, 2, 3)
        assert [task["name"] for task in body["tasks"]] == ["task 0"]

    def test_import(self, client, clock, alice):
        due = (clock() + timedelta(days=4)).date().isoformat()
        content = (
            "name,description,priority,assignee,category,due_date,recurring_frequency\n"
            f"TDS 26Q,Quarterly TDS,high,Alice,TDS,{due},quarterly\n"
        )
        response = client.post("/tasks/import", files={"file": ("tasks.csv", content, "text/csv")})
        assert response.status_code == 200
        assert response.json()["inserted"] == 1


class TestAnalysisEndpoints:
    def test_upload_and_assessment(self, client, make_task):
        task = make_task()

        response = client.post(
            f"/tasks/{task.id}/documents",
            files={"file": ("gst_return_march.pdf", b"return filed", "text/plain")},
        )
        assert response.status_code == 201
        assert response.json()["status"] == "validated"

        assessment = client.get(f"/tasks/{task.id}/assessment").json()
        assert assessment["overall_completion_percentage"] == 80
        assert assessment["documents_analyzed"] == 1

        sections = client.get(f"/tasks/{task.id}/documents/sections").json()
        assert sections["total_documents"] == 1
        assert len(sections["primary"]) == 1

        analysis = client.get(f"/tasks/{task.id}/analysis").json()
        assert analysis["summary"]["completion_percentage"] == 80

    def test_document_status(self, client, make_task):
        task = make_task()
        document = client.post(f"/tasks/{task.id}/documents", files={"file": ("a.txt", b"a", "text/plain")}).json()

        response = client.patch(f"/documents/{document['id']}/status", json={"status": "bogus"})
        assert response.status_code == 400

        response = client.patch(f"/documents/{document['id']}/status", json={"status": "pending"})
        assert response.json()["status"] == "pending"

    def test_reminder(self, client, make_task, alice, notifier):
        task = make_task(assignee_user=alice)
        response = client.post(f"/tasks/{task.id}/reminders", json={"reminder_type": "due_today"})
        assert response.json() == {"task_id": task.id, "sent": True}
        assert notifier.subjects() == ["Task Due Today - GSTR-3B March"]

    def test_upload_does_not_block_other_requests(self, service, lifecycle, analyzer, make_task):
        task = make_task()
        service.analyzer = SlowAnalyzer(analyzer, delay=1.0)
        app = build_app(service, lifecycle)

        async def scenario():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
                async def upload():
                    return await http.post(f"/tasks/{task.id}/documents", files={"file": ("a.txt", b"a", "text/plain")})

                async def read():
                    await asyncio.sleep(0.1)
                    started = time.monotonic()
                    response = await http.get(f"/tasks/{task.id}")
                    return response, time.monotonic() - started

                return await asyncio.gather(upload(), read())

        uploaded, (fetched, elapsed) = asyncio.run(scenario())

        assert uploaded.status_code == 201
        assert fetched.status_code == 200
        assert elapsed < 0.5


class TestAccessChecks:
    def test_document_routes(self, client, make_task, alice, bob):
        task = make_task(assignee_user=alice)
        document = client.post(
            f"/tasks/{task.id}/documents", files={"file": ("a.txt", b"a", "text/plain")}, headers=as_user(alice),
        ).json()

        assert client.post(f"/documents/{document['id']}/reanalyze", headers=as_user(bob)).status_code == 403
        response = client.patch(f"/documents/{document['id']}/status", json={"status": "failed"}, headers=as_user(bob))
        assert response.status_code == 403
        assert client.get(f"/tasks/{task.id}/documents", headers=as_user(alice)).json()[0]["status"] == "validated"

        assert client.post(f"/documents/{document['id']}/reanalyze", headers=as_user(alice)).status_code == 200

    def test_single_reminder(self, client, make_task, alice, bob, notifier):
        task = make_task(assignee_user=alice)
        response = client.post(f"/tasks/{task.id}/reminders", json={}, headers=as_user(bob))
        assert response.status_code == 403
        assert notifier.sent == []

    def test_missing_document(self, client, bob):
        assert client.post("/documents/999/reanalyze", headers=as_user(bob)).status_code == 404


class TestReminderEndpoints:
    def test_send_all(self, client, make_task, clock, alice, admin, notifier):
        make_task(name="late", due_date=clock() - timedelta(days=1), assignee_user=alice)

        response = client.post("/reminders/send-all", headers=as_user(admin))

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Reminders sent successfully"
        assert (body["summary"]["total_eligible"], body["summary"]["sent"]) == (1, 1)
        assert len(notifier.sent) == 1

    def test_status(self, client, make_task, clock, alice, admin, notifier):
        task = make_task(name="late", due_date=clock() - timedelta(days=1), assignee_user=alice)

        body = client.get("/reminders/status", headers=as_user(admin)).json()

        assert body["total_tasks_needing_reminders"] == 1
        assert body["tasks"][0]["task_id"] == task.id
        assert body["tasks"][0]["reminder_type"] == "overdue"
        assert notifier.sent == []

    def test_admin_only(self, client, alice):
        assert client.post("/reminders/send-all", headers=as_user(alice)).status_code == 403
        assert client.get("/reminders/status", headers=as_user(alice)).status_code == 403


def test_lifespan_creates_tables(monkeypatch):
    import main

    created = []
    monkeypatch.setattr(main, "create_tables", lambda: created.append(True))
    with TestClient(main.create_app()):
        assert created == [True]
