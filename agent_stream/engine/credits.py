"""Credit balance collaborator — ABC, HTTP client, and a static stand-in."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx
from pydantic import ValidationError

from agent_stream.engine.errors import ServiceError
from agent_stream.engine.models import CreditBalance

logger = logging.getLogger(__name__)


class CreditClient(ABC):
    @abstractmethod
    async def remaining(self) -> CreditBalance: ...

    async def aclose(self) -> None:
        return None


class HttpCreditClient(CreditClient):
    """Reads ``GET /api/messages/remaining``.

    The JSON body is authoritative; the ``X-Credits-*`` headers fill in
    anything it leaves out.
    """

    def __init__(
        self,
        base_url: str,
        *,
        path: str = "/api/messages/remaining",
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._path = path
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=10.0
        )

    async def remaining(self) -> CreditBalance:
        try:
            response = await self._client.get(self._path)
        except httpx.TransportError as exc:
            raise ServiceError(f"credit request failed: {exc!r}") from exc
        if response.status_code != 200:
            raise ServiceError(
                f"credit request returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ServiceError("credit response is not JSON") from exc
        if not isinstance(body, dict):
            raise ServiceError("credit response is not an object")

        body.setdefault("remaining", response.headers.get("X-Credits-Remaining"))
        body.setdefault("maxLimit", response.headers.get("X-Credits-Limit"))
        try:
            return CreditBalance.model_validate(body)
        except ValidationError as exc:
            raise ServiceError(f"malformed credit response: {exc.error_count()} error(s)") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StaticCreditClient(CreditClient):
    """Fixed balance; counts how often it was asked. Used in demo mode and tests."""

    def __init__(self, remaining: int = 10, *, max_limit: int = 10, is_authenticated: bool = False) -> None:
        self.balance = CreditBalance(
            remaining=remaining, max_limit=max_limit, is_authenticated=is_authenticated
        )
        self.calls = 0

    async def remaining(self) -> CreditBalance:
        self.calls += 1
        return self.balance
