"""
HTTP 接口测试

通过 httpx.ASGITransport 直接调用 FastAPI 应用（不启动 lifespan），
数据库会话和服务单例用 dependency_overrides 替换为测试实例。
"""

import httpx
import pytest
import pytest_asyncio

from app.api.deps import (
    get_analytics_service,
    get_conversation_service,
    get_db_session,
    get_ingestion_service,
)
from app.main import app
from app.services.conversation import ConversationService
from app.services.feedback import AnalyticsService
from app.services.ingestion import IngestionService

USER = {"X-User-Id": "user-1"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def ingestion(session_factory, registry, index):
    return IngestionService(session_factory, registry=registry, index=index)


@pytest_asyncio.fixture
async def client(session_factory, registry, index, ingestion):
    analytics = AnalyticsService(ttl_seconds=300)
    conversations = ConversationService(registry=registry, index=index, on_change=analytics.invalidate)

    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = _db
    app.dependency_overrides[get_ingestion_service] = lambda: ingestion
    app.dependency_overrides[get_conversation_service] = lambda: conversations
    app.dependency_overrides[get_analytics_service] = lambda: analytics

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await ingestion.runner.shutdown()
    app.dependency_overrides.clear()


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_user_header(self, client):
        resp = await client.get("/v1/conversations")
        assert resp.status_code == 401
        assert resp.json() == {"code": "MISSING_USER", "detail": "Missing X-User-Id header"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/v1/admin/knowledge/documents"),
            ("get", "/v1/admin/analytics/usage"),
            ("get", "/v1/admin/providers"),
        ],
    )
    async def test_admin_routes_require_admin_role(self, client, method, path):
        resp = await client.request(method.upper(), path, headers=USER)
        assert resp.status_code == 403
        assert resp.json() == {"code": "FORBIDDEN", "detail": "Admin role required"}

    @pytest.mark.asyncio
    async def test_health_needs_no_headers(self, client):
        resp = await client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "indexed_chunks": 0}
        assert "X-Request-ID" in resp.headers


class TestKnowledgeApi:
    @pytest.mark.asyncio
    async def test_upload_and_poll_job(self, client, ingestion, provider):
        resp = await client.post(
            "/v1/admin/knowledge/documents",
            json={"title": "Income Tax Act", "content": "Income tax is charged on chargeable income.", "category": "income"},
            headers=ADMIN,
        )
        assert resp.status_code == 202
        body = resp.json()
        assert body["total_chunks"] == 1
        assert body["status"] == "pending"

        await ingestion.runner.wait(body["job_id"])

        resp = await client.get(f"/v1/admin/knowledge/jobs/{body['job_id']}", headers=ADMIN)
        assert resp.status_code == 200
        job = resp.json()
        assert job["status"] == "completed"
        assert job["processed"] == job["total"] == 1
        assert job["error"] is None

        resp = await client.get("/v1/admin/knowledge/documents", params={"category": "income"}, headers=ADMIN)
        docs = resp.json()
        assert docs["total"] == 1
        assert docs["items"][0]["embedded_count"] == 1

        assert (await client.get("/healthz")).json()["indexed_chunks"] == 1

    @pytest.mark.asyncio
    async def test_delete_and_reprocess(self, client, ingestion, provider):
        body = (await client.post(
            "/v1/admin/knowledge/documents",
            json={"title": "GST Guide", "content": "GST applies to taxable supplies."},
            headers=ADMIN,
        )).json()
        await ingestion.runner.wait(body["job_id"])

        resp = await client.delete(f"/v1/admin/knowledge/documents/{body['document_id']}", headers=ADMIN)
        assert resp.status_code == 204
        listed = (await client.get("/v1/admin/knowledge/documents", headers=ADMIN)).json()
        assert listed["total"] == 0

        resp = await client.post(f"/v1/admin/knowledge/documents/{body['document_id']}/reprocess", headers=ADMIN)
        assert resp.status_code == 202
        assert resp.json()["document_id"] == body["document_id"]
        listed = (await client.get("/v1/admin/knowledge/documents", headers=ADMIN)).json()
        assert listed["total"] == 1

    @pytest.mark.asyncio
    async def test_unknown_job_returns_not_found(self, client):
        resp = await client.get("/v1/admin/knowledge/jobs/missing", headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_cancel_finished_job_conflicts(self, client, ingestion):
        body = (await client.post(
            "/v1/admin/knowledge/documents",
            json={"title": "Empty", "content": ""},
            headers=ADMIN,
        )).json()
        assert body["status"] == "completed"

        resp = await client.post(f"/v1/admin/knowledge/jobs/{body['job_id']}/cancel", headers=ADMIN)
        assert resp.status_code == 409
        assert resp.json()["code"] == "JOB_CONFLICT"

    @pytest.mark.asyncio
    async def test_upload_validation_error(self, client):
        resp = await client.post("/v1/admin/knowledge/documents", json={"content": "no title"}, headers=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["code"] == "VALIDATION_ERROR"


class TestChatApi:
    @pytest.mark.asyncio
    async def test_chat_flow(self, client, provider):
        resp = await client.post("/v1/chat", json={"message": "When is the PAYE return due?"}, headers=USER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["reply"]["context_found"] is False
        assert body["reply"]["sources"] == []
        assert body["reply"]["provider"] == "openai"
        conversation_id = body["conversation_id"]

        resp = await client.post(
            "/v1/chat",
            json={"message": "And for GST?", "conversation_id": conversation_id},
            headers=USER,
        )
        assert resp.json()["conversation_id"] == conversation_id

        listed = (await client.get("/v1/conversations", headers=USER)).json()
        assert [c["id"] for c in listed["items"]] == [conversation_id]
        assert listed["items"][0]["title"] == "When is the PAYE return due?"

        detail = (await client.get(f"/v1/conversations/{conversation_id}", headers=USER)).json()
        assert [(m["sequence"], m["role"]) for m in detail["messages"]] == [
            (1, "user"), (2, "assistant"), (3, "user"), (4, "assistant"),
        ]

        resp = await client.get(f"/v1/conversations/{conversation_id}", headers={"X-User-Id": "user-2"})
        assert resp.status_code == 404

        resp = await client.post(f"/v1/conversations/{conversation_id}/archive", headers=USER)
        assert resp.json()["is_archived"] is True
        resp = await client.post(
            "/v1/chat",
            json={"message": "One more", "conversation_id": conversation_id},
            headers=USER,
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "CONVERSATION_ARCHIVED"

    @pytest.mark.asyncio
    async def test_chat_without_provider(self, client):
        resp = await client.post("/v1/chat", json={"message": "Hello"}, headers=USER)
        assert resp.status_code == 503
        assert resp.json()["code"] == "PROVIDER_NOT_CONFIGURED"

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, client, provider):
        resp = await client.post("/v1/chat", json={"message": ""}, headers=USER)
        assert resp.status_code == 422


class TestFeedbackAndAnalyticsApi:
    @pytest.mark.asyncio
    async def test_feedback_updates_analytics(self, client, provider):
        chat = (await client.post("/v1/chat", json={"message": "Withholding tax on rent"}, headers=USER)).json()

        usage = (await client.get("/v1/admin/analytics/usage", headers=ADMIN)).json()
        assert usage["total_feedback"] == 0

        message_id = chat["reply"]["message_id"]
        resp = await client.post(f"/v1/messages/{message_id}/feedback", json={"rating": 4}, headers=USER)
        assert resp.status_code == 201
        assert resp.json()["helpful"] is True

        usage = (await client.get("/v1/admin/analytics/usage", headers=ADMIN)).json()
        assert usage["total_feedback"] == 1
        assert usage["average_rating"] == 4.0
        assert usage["total_messages"] == 2

        topics = (await client.get("/v1/admin/analytics/topics", params={"limit": 1}, headers=ADMIN)).json()
        assert topics["topics"] == [{"topic": "rent", "count": 1}]

    @pytest.mark.asyncio
    async def test_feedback_validation(self, client, provider):
        chat = (await client.post("/v1/chat", json={"message": "Hello"}, headers=USER)).json()
        message_id = chat["reply"]["message_id"]

        resp = await client.post(f"/v1/messages/{message_id}/feedback", json={"rating": 9}, headers=USER)
        assert resp.status_code == 422
        resp = await client.post(
            f"/v1/messages/{message_id}/feedback", json={"rating": 3}, headers={"X-User-Id": "user-2"}
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_analytics_range(self, client):
        resp = await client.get(
            "/v1/admin/analytics/usage",
            params={"start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
            headers=ADMIN,
        )
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_DATE_RANGE"


class TestProviderApi:
    @pytest.mark.asyncio
    async def test_provider_crud(self, client):
        resp = await client.post(
            "/v1/admin/providers",
            json={"name": "Claude", "provider": "anthropic", "model_name": "claude-test", "api_key": "sk-ant", "is_default": True},
            headers=ADMIN,
        )
        assert resp.status_code == 201
        created = resp.json()
        assert created["has_api_key"] is True
        assert "api_key" not in created and "api_key_encrypted" not in created

        resp = await client.patch(f"/v1/admin/providers/{created['id']}", json={"top_k": 8}, headers=ADMIN)
        assert resp.json()["top_k"] == 8
        assert resp.json()["model_name"] == "claude-test"

        listed = (await client.get("/v1/admin/providers", headers=ADMIN)).json()
        assert [p["id"] for p in listed] == [created["id"]]

        resp = await client.delete(f"/v1/admin/providers/{created['id']}", headers=ADMIN)
        assert resp.status_code == 204
        resp = await client.get(f"/v1/admin/providers/{created['id']}", headers=ADMIN)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_provider_type_rejected(self, client):
        resp = await client.post(
            "/v1/admin/providers",
            json={"name": "x", "provider": "mistral", "model_name": "m"},
            headers=ADMIN,
        )
        assert resp.status_code == 422
