"""
Tests for newsletter publishing endpoints:
- POST /api/v1/admin/newsletters
- GET /api/v1/admin/newsletters/{issue_id}/deliveries
"""

import asyncio
from uuid import uuid4

from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from factories import count_idempotency_records, count_issues, count_tasks
from newsletter.models.delivery import IssueDeliveryTask

PUBLISH_URL = "/api/v1/admin/newsletters"


def _issue_payload(idempotency_key: str, **overrides) -> dict:
    payload = {
        "title": "T",
        "text_content": "txt",
        "html_content": "<p>html</p>",
        "idempotency_key": idempotency_key,
    }
    payload.update(overrides)
    return payload


def _replayable_headers(response) -> list[tuple[str, str]]:
    # X-Request-ID identifies each individual request and is never replayed
    return [(k, v) for k, v in response.headers.multi_items() if k.lower() != "x-request-id"]


class TestPublishIssue:
    """POST /api/v1/admin/newsletters tests."""

    async def test_publish_returns_202_and_queues_deliveries(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: dict,
        auth_headers,
        add_subscribers,
        idempotency_key,
    ):
        """Publishing stores the issue and one task per confirmed subscriber."""
        await add_subscribers(confirmed=["a@example.com", "b@example.com", "c@example.com"])

        response = await async_client.post(
            PUBLISH_URL,
            json=_issue_payload(idempotency_key()),
            headers=auth_headers(test_user["api_key"]),
        )

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "accepted"
        assert data["issue_id"]
        assert await count_issues(db_session) == 1
        assert await count_tasks(db_session) == 3

    async def test_unconfirmed_subscribers_are_not_queued(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: dict,
        auth_headers,
        add_subscribers,
        idempotency_key,
    ):
        await add_subscribers(confirmed=["a@example.com"], pending=["pending@example.com"])

        response = await async_client.post(
            PUBLISH_URL,
            json=_issue_payload(idempotency_key()),
            headers=auth_headers(test_user["api_key"]),
        )

        assert response.status_code == 202
        result = await db_session.execute(select(IssueDeliveryTask.subscriber_email))
        assert result.scalars().all() == ["a@example.com"]

    async def test_publish_with_no_subscribers_succeeds(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: dict,
        auth_headers,
        idempotency_key,
    ):
        response = await async_client.post(
            PUBLISH_URL,
            json=_issue_payload(idempotency_key()),
            headers=auth_headers(test_user["api_key"]),
        )

        assert response.status_code == 202
        assert await count_issues(db_session) == 1
        assert await count_tasks(db_session) == 0

    async def test_publish_requires_auth(self, async_client: AsyncClient, idempotency_key):
        """Unauthenticated request returns 401."""
        response = await async_client.post(PUBLISH_URL, json=_issue_payload(idempotency_key()))
        assert response.status_code == 401
        assert response.json()["detail"]["error"]["code"] == "UNAUTHORIZED"

    async def test_invalid_idempotency_key_returns_400(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: dict,
        auth_headers,
    ):
        response = await async_client.post(
            PUBLISH_URL,
            json=_issue_payload("not a valid key"),
            headers=auth_headers(test_user["api_key"]),
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_IDEMPOTENCY_KEY"
        assert await count_idempotency_records(db_session) == 0
        assert await count_issues(db_session) == 0

    async def test_missing_fields_return_422(
        self, async_client: AsyncClient, test_user: dict, auth_headers
    ):
        response = await async_client.post(
            PUBLISH_URL,
            json={"title": "T", "idempotency_key": "k"},
            headers=auth_headers(test_user["api_key"]),
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestPublishIdempotency:
    """Retried and concurrent publish requests."""

    async def test_retry_replays_identical_response(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: dict,
        auth_headers,
        add_subscribers,
        idempotency_key,
    ):
        """Same user and key: same status, headers and body; nothing new stored."""
        await add_subscribers(confirmed=["a@example.com", "b@example.com", "c@example.com"])
        payload = _issue_payload(idempotency_key())
        headers = auth_headers(test_user["api_key"])

        first = await async_client.post(PUBLISH_URL, json=payload, headers=headers)
        second = await async_client.post(PUBLISH_URL, json=payload, headers=headers)

        assert first.status_code == 202
        assert second.status_code == first.status_code
        assert second.content == first.content
        assert _replayable_headers(second) == _replayable_headers(first)
        assert await count_issues(db_session) == 1
        assert await count_tasks(db_session) == 3

    async def test_different_keys_publish_separately(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: dict,
        auth_headers,
        add_subscribers,
        idempotency_key,
    ):
        await add_subscribers(confirmed=["a@example.com"])
        headers = auth_headers(test_user["api_key"])

        first = await async_client.post(PUBLISH_URL, json=_issue_payload(idempotency_key()), headers=headers)
        second = await async_client.post(PUBLISH_URL, json=_issue_payload(idempotency_key()), headers=headers)

        assert first.json()["issue_id"] != second.json()["issue_id"]
        assert await count_issues(db_session) == 2
        assert await count_tasks(db_session) == 2

    async def test_concurrent_submissions_publish_once(
        self,
        async_client: AsyncClient,
        db_session: AsyncSession,
        test_user: dict,
        auth_headers,
        add_subscribers,
        idempotency_key,
    ):
        """N concurrent requests with one key: one issue, N identical responses."""
        await add_subscribers(confirmed=["a@example.com", "b@example.com"])
        payload = _issue_payload(idempotency_key())
        headers = auth_headers(test_user["api_key"])

        responses = await asyncio.gather(
            *(async_client.post(PUBLISH_URL, json=payload, headers=headers) for _ in range(5))
        )

        assert {r.status_code for r in responses} == {202}
        assert len({r.content for r in responses}) == 1
        assert await count_issues(db_session) == 1
        assert await count_tasks(db_session) == 2
        assert await count_idempotency_records(db_session) == 1


class TestDeliveryStatus:
    """GET /api/v1/admin/newsletters/{issue_id}/deliveries tests."""

    async def test_status_reports_pending_deliveries(
        self,
        async_client: AsyncClient,
        test_user: dict,
        auth_headers,
        add_subscribers,
        idempotency_key,
    ):
        await add_subscribers(confirmed=["a@example.com", "b@example.com"])
        headers = auth_headers(test_user["api_key"])
        published = await async_client.post(
            PUBLISH_URL, json=_issue_payload(idempotency_key()), headers=headers
        )
        issue_id = published.json()["issue_id"]

        response = await async_client.get(f"{PUBLISH_URL}/{issue_id}/deliveries", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["issue_id"] == issue_id
        assert data["pending"] == 2
        assert data["failed"] == []

    async def test_status_unknown_issue_returns_404(
        self, async_client: AsyncClient, test_user: dict, auth_headers
    ):
        response = await async_client.get(
            f"{PUBLISH_URL}/{uuid4()}/deliveries",
            headers=auth_headers(test_user["api_key"]),
        )
        assert response.status_code == 404
