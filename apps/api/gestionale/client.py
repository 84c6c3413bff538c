from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from gestionale.core.config import get_settings


logger = logging.getLogger("gestionale.client")

OutcomeKind = Literal["success", "validation_error", "backend_error"]


class CrmApiError(Exception):
    def __init__(self, status_code: int, kind: str, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.kind = kind
        self.message = message
        self.code = code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "CrmApiError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        message = body.get("message")
        if message is None and "detail" in body:
            message = str(body["detail"])
        kind = body.get("kind") or ("validation_error" if response.status_code == 422 else "backend_error")
        return cls(
            status_code=response.status_code,
            kind=kind,
            message=message or response.reason_phrase,
            code=body.get("code"),
        )


class ActionInFlightError(RuntimeError):
    """Raised when an action is submitted again before its previous submission resolved."""


@dataclass
class ActionOutcome:
    action: str
    kind: OutcomeKind
    message: str
    data: Any = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.kind == "success"


class CrmApiClient:
    """Async client for the CRM HTTP API.

    Mutating calls go through ``run_action`` so each submission resolves to one outcome and
    the same action cannot be submitted twice while it is still pending.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=timeout if timeout is not None else settings.api_timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self._in_flight: set[str] = set()

    async def __aenter__(self) -> "CrmApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        clean_params = {key: value for key, value in (params or {}).items() if value is not None}
        response = await self._client.request(method, path, params=clean_params, json=json, headers=headers)
        if response.status_code >= 400:
            raise CrmApiError.from_response(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Reads

    async def search_entities(
        self,
        entity_type: str,
        q: str = "",
        *,
        province: str | None = None,
        org_type: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "GET",
            "/api/crm/selector/entities",
            params={"entity_type": entity_type, "q": q, "province": province, "org_type": org_type, "limit": limit},
        )

    async def list_facets(self) -> dict[str, Any]:
        return await self._request("GET", "/api/crm/selector/facets")

    async def list_affiliations(self, organization_id: uuid.UUID | str, q: str | None = None) -> dict[str, Any]:
        return await self._request("GET", f"/api/crm/organizations/{organization_id}/affiliations", params={"q": q})

    async def list_opportunity_quotes(self, opportunity_id: uuid.UUID | str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/api/crm/opportunities/{opportunity_id}/quotes")

    async def quote_summary(self, opportunity_id: uuid.UUID | str) -> dict[str, Any]:
        return await self._request("GET", f"/api/crm/opportunities/{opportunity_id}/quote-summary")

    async def quote_handoff(self, opportunity_id: uuid.UUID | str) -> dict[str, Any]:
        return await self._request("GET", f"/api/crm/opportunities/{opportunity_id}/quote-handoff")

    # Writes

    async def quick_create_referent(self, organization_id: uuid.UUID | str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/api/crm/organizations/{organization_id}/referents", json=payload)

    async def convert_lead(self, lead_id: uuid.UUID | str, *, idempotency_key: str | None = None) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return await self._request("POST", f"/api/crm/leads/{lead_id}/convert", json={"confirm": True}, headers=headers)

    async def create_prospect(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/crm/opportunities", json=payload)

    async def change_stage(
        self,
        opportunity_id: uuid.UUID | str,
        stage: str,
        row_version: int,
        *,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        return await self._request(
            "POST",
            f"/api/crm/opportunities/{opportunity_id}/stage",
            json={"stage": stage, "row_version": row_version},
            headers=headers,
        )

    async def create_quote(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/crm/quotes", json=payload)

    # Actions

    def is_in_flight(self, action: str) -> bool:
        return action in self._in_flight

    async def run_action(self, action: str, call: Callable[[], Awaitable[Any]]) -> ActionOutcome:
        if action in self._in_flight:
            raise ActionInFlightError(f"{action} is already in progress")

        self._in_flight.add(action)
        try:
            data = await call()
        except CrmApiError as exc:
            if exc.kind == "validation_error":
                return ActionOutcome(
                    action=action,
                    kind="validation_error",
                    message=f"{action}: {exc.message}",
                    status_code=exc.status_code,
                )
            logger.error(
                "client.action_failed",
                extra={"action": action, "status_code": exc.status_code, "error": exc.message},
            )
            return ActionOutcome(
                action=action,
                kind="backend_error",
                message=f"could not complete {action}",
                status_code=exc.status_code,
            )
        except httpx.TimeoutException as exc:
            logger.error("client.action_timeout", extra={"action": action, "error": str(exc)})
            return ActionOutcome(action=action, kind="backend_error", message=f"{action} timed out, retry")
        except httpx.HTTPError as exc:
            logger.error("client.action_failed", extra={"action": action, "error": str(exc)})
            return ActionOutcome(action=action, kind="backend_error", message=f"could not complete {action}")
        finally:
            self._in_flight.discard(action)

        notice = data.get("notice") if isinstance(data, dict) else None
        message = notice.get("message") if isinstance(notice, dict) else f"{action} completed"
        return ActionOutcome(action=action, kind="success", message=message, data=data)
