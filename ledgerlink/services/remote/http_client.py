"""
HTTP Ledger Client

Speaks the YNAB-style REST API (``/budgets/...``) over httpx.

DESIGN DECISION: Only idempotent reads are retried. Writes (create,
update, delete, budget changes) run exactly once; retrying a create
after a lost response could duplicate a transaction, and the
reconciliation layer already handles partial failure explicitly.

Retried: 429, 5xx and transport failures. Never retried: 401, 404.
"""

from datetime import date, datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from ledgerlink.config import LedgerApiSettings, get_settings
from ledgerlink.models.ledger import (
    Account,
    Category,
    LedgerDetail,
    LedgerSummary,
    MonthDetail,
    Transaction,
    TransactionDraft,
    TransactionPage,
)
from ledgerlink.services.remote.interface import (
    AuthError,
    LedgerClientInterface,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServiceUnavailable,
)


logger = structlog.get_logger(__name__)

RETRYABLE_ERRORS = (RateLimitError, ServiceUnavailable, NetworkError)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "ledger_request_retry",
        attempt=retry_state.attempt_number,
        error=str(error),
        error_type=type(error).__name__,
    )


def _error_detail(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error") or {}
        if isinstance(error, dict):
            return error.get("detail")
    return None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delay seconds or HTTP-date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("retry_after_unparseable", value=value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _flatten_categories(groups: list[dict[str, Any]]) -> list[Category]:
    categories = []
    for group in groups:
        for raw in group.get("categories") or []:
            categories.append(Category.model_validate({
                **raw,
                "category_group_name": raw.get("category_group_name") or group.get("name"),
            }))
    return categories


class HttpLedgerClient(LedgerClientInterface):
    """
    Remote ledger client over ``httpx.AsyncClient`` with bearer auth.

    Usage:
        async with HttpLedgerClient(token) as client:
            page = await client.list_transactions(ledger_id, since_cursor=42)
    """

    def __init__(
        self,
        token: Optional[str] = None,
        settings: Optional[LedgerApiSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait: Optional[wait_base] = None,
    ):
        """
        Initialize the client.

        Args:
            token: API token. Falls back to the configured token.
            settings: API settings (defaults to the global settings)
            transport: Optional httpx transport (tests use MockTransport)
            retry_wait: Backoff strategy between read retries
        """
        self._settings = settings or get_settings().ledger_api
        self._token = token or self._settings.token
        self._transport = transport
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=2, max=10)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_initialized(self) -> bool:
        return bool(self._token)

    def set_token(self, token: str) -> None:
        self._token = token

    # -- Lifecycle -----------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=httpx.Timeout(self._settings.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpLedgerClient":
        self._get_client()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- Transport -----------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Issue one request and unwrap the ``{"data": ...}`` envelope.

        Raises:
            AuthError, NotFoundError, RateLimitError, ServiceUnavailable,
            NetworkError
        """
        if not self._token:
            raise AuthError("API token not configured")

        try:
            response = await self._get_client().request(
                method,
                path,
                params=params,
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        logger.debug("ledger_request", method=method, path=path, status=response.status_code)
        self._raise_for_status(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise ServiceUnavailable(
                f"Malformed response from {path}", response.status_code
            ) from e
        return payload.get("data") or {}

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return

        status = response.status_code
        detail = _error_detail(response)
        if status == 401:
            raise AuthError(detail or "Invalid API token", status)
        if status == 404:
            raise NotFoundError(detail or "Resource not found", status)
        if status == 429:
            raise RateLimitError(
                detail or "Rate limit exceeded",
                status,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        raise ServiceUnavailable(detail or f"API error: {status}", status)

    async def _read(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """GET with exponential-backoff retries on transient failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries),
            wait=self._retry_wait,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                data = await self._request("GET", path, params=params)
        return data

    # -- Ledgers -------------------------------------------------------------

    async def list_ledgers(self) -> list[LedgerSummary]:
        data = await self._read("/budgets")
        return [LedgerSummary.model_validate(b) for b in data.get("budgets", [])]

    async def get_ledger(
        self,
        ledger_id: str,
        cursor: Optional[int] = None,
    ) -> LedgerDetail:
        params = {"last_knowledge_of_server": cursor} if cursor else None
        data = await self._read(f"/budgets/{ledger_id}", params=params)
        budget = data.get("budget") or {}

        group_names = {
            g["id"]: g.get("name") for g in budget.get("category_groups") or [] if "id" in g
        }
        categories = [
            Category.model_validate({
                **raw,
                "category_group_name": group_names.get(raw.get("category_group_id")),
            })
            for raw in budget.get("categories") or []
        ]
        return LedgerDetail(
            id=budget.get("id", ledger_id),
            name=budget.get("name", ""),
            last_modified_on=budget.get("last_modified_on"),
            accounts=[Account.model_validate(a) for a in budget.get("accounts") or []],
            categories=categories,
            cursor=data.get("server_knowledge"),
        )

    async def list_accounts(self, ledger_id: str) -> list[Account]:
        data = await self._read(f"/budgets/{ledger_id}/accounts")
        return [Account.model_validate(a) for a in data.get("accounts", [])]

    # -- Categories and months -----------------------------------------------

    async def list_categories(self, ledger_id: str) -> list[Category]:
        data = await self._read(f"/budgets/{ledger_id}/categories")
        return _flatten_categories(data.get("category_groups", []))

    async def get_category(self, ledger_id: str, category_id: str) -> Category:
        data = await self._read(f"/budgets/{ledger_id}/categories/{category_id}")
        return Category.model_validate(data["category"])

    async def get_month(self, ledger_id: str, month: str) -> MonthDetail:
        data = await self._read(f"/budgets/{ledger_id}/months/{month}")
        return MonthDetail.model_validate(data["month"])

    async def update_category_budget(
        self,
        ledger_id: str,
        month: str,
        category_id: str,
        budgeted: int,
    ) -> Category:
        data = await self._request(
            "PATCH",
            f"/budgets/{ledger_id}/months/{month}/categories/{category_id}",
            body={"category": {"budgeted": budgeted}},
        )
        return Category.model_validate(data["category"])

    # -- Transactions --------------------------------------------------------

    async def list_transactions(
        self,
        ledger_id: str,
        since_date: Optional[date] = None,
        since_cursor: Optional[int] = None,
    ) -> TransactionPage:
        params: dict[str, Any] = {}
        if since_date:
            params["since_date"] = since_date.isoformat()
        if since_cursor:
            params["last_knowledge_of_server"] = since_cursor

        data = await self._read(f"/budgets/{ledger_id}/transactions", params=params or None)
        return TransactionPage(
            transactions=[Transaction.model_validate(t) for t in data.get("transactions", [])],
            cursor=data.get("server_knowledge"),
        )

    async def get_transaction(self, ledger_id: str, transaction_id: str) -> Transaction:
        data = await self._read(f"/budgets/{ledger_id}/transactions/{transaction_id}")
        return Transaction.model_validate(data["transaction"])

    async def create_transaction(
        self,
        ledger_id: str,
        draft: TransactionDraft,
    ) -> Transaction:
        data = await self._request(
            "POST",
            f"/budgets/{ledger_id}/transactions",
            body={"transaction": draft.to_payload()},
        )
        return Transaction.model_validate(data["transaction"])

    async def update_transaction(
        self,
        ledger_id: str,
        transaction_id: str,
        draft: TransactionDraft,
    ) -> Transaction:
        data = await self._request(
            "PUT",
            f"/budgets/{ledger_id}/transactions/{transaction_id}",
            body={"transaction": draft.to_payload()},
        )
        return Transaction.model_validate(data["transaction"])

    async def delete_transaction(self, ledger_id: str, transaction_id: str) -> Transaction:
        data = await self._request(
            "DELETE",
            f"/budgets/{ledger_id}/transactions/{transaction_id}",
        )
        return Transaction.model_validate(data["transaction"])
