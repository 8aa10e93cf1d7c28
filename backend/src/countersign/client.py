"""Client for the signature-state polling endpoint.

Used by dashboards and back-office jobs that wait for both signatures. Polling
stops as soon as the deal is fully signed, backs off exponentially up to a
ceiling, and gives up after a maximum duration (abandoned signings never
reach consensus).
"""

from dataclasses import dataclass
from typing import Any
from uuid import UUID

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
    wait_exponential,
)

from countersign.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignatureStateSnapshot:
    """One observation of a deal's signature state."""

    deal_id: str
    awaiting_creator: bool
    awaiting_counterparty: bool
    both_signed: bool
    stage: str
    degraded: bool = False

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SignatureStateSnapshot":
        reconciliation = payload.get("reconciliation") or {}
        return cls(
            deal_id=str(payload["deal_id"]),
            awaiting_creator=bool(payload["awaiting_creator"]),
            awaiting_counterparty=bool(payload["awaiting_counterparty"]),
            both_signed=bool(payload["both_signed"]),
            stage=str(payload["stage"]),
            degraded=bool(reconciliation.get("degraded", False)),
        )


class SignatureStateClient:
    """Thin httpx client for GET /api/v1/signing/signature-state/{deal_id}."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_state(self, deal_id: UUID | str) -> SignatureStateSnapshot:
        client = await self._get_client()
        response = await client.get(f"/api/v1/signing/signature-state/{deal_id}")
        response.raise_for_status()
        return SignatureStateSnapshot.from_payload(response.json())


async def poll_until_both_signed(
    client: SignatureStateClient,
    deal_id: UUID | str,
    *,
    interval: float = 3.0,
    max_interval: float = 30.0,
    max_duration: float = 900.0,
) -> SignatureStateSnapshot | None:
    """Poll until both parties have signed or `max_duration` elapses.

    Transport errors count as an unsuccessful poll and are retried with the
    same backoff. Returns the last successful observation (possibly not fully
    signed) when the deadline passes, or None if no poll ever succeeded.
    """
    last: SignatureStateSnapshot | None = None

    retrying = AsyncRetrying(
        retry=(
            retry_if_result(lambda snapshot: snapshot is None or not snapshot.both_signed)
            | retry_if_exception_type(httpx.HTTPError)
        ),
        wait=wait_exponential(multiplier=interval, min=interval, max=max_interval),
        stop=stop_after_delay(max_duration),
    )

    try:
        async for attempt in retrying:
            with attempt:
                snapshot = await client.get_state(deal_id)
                last = snapshot
                if snapshot.degraded:
                    logger.info("signature_state_degraded", deal_id=str(deal_id))
            outcome = attempt.retry_state.outcome
            if outcome is not None and not outcome.failed:
                attempt.retry_state.set_result(snapshot)
    except RetryError:
        logger.warning(
            "signature_state_poll_gave_up",
            deal_id=str(deal_id),
            max_duration=max_duration,
            both_signed=last.both_signed if last else None,
        )
        return last

    return last
