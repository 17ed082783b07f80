"""
Consent store — gate states and signed consent receipts.

Two implementations behind one interface: SqlConsentStore (persistent, async
SQLAlchemy) and InMemoryConsentStore (tests, single-process demos). Callers
get one injected; nothing holds a module-level store.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from openledger.models.consent import ConsentGate, ConsentReceipt
from openledger.services.receipts import Receipt, create_receipt

logger = logging.getLogger(__name__)


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 date or datetime; values without an offset are taken as UTC. Raises ValueError."""
    if not isinstance(value, str):
        raise ValueError(f"Timestamp must be a string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def time_bounds(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    """Parse a [start, end] receipt window. Raises ValueError on a malformed bound."""
    lower = parse_timestamp(start) if start else None
    upper = parse_timestamp(end) if end else None
    return lower, upper


def _within(timestamp: str, lower: datetime | None, upper: datetime | None) -> bool:
    try:
        ts = parse_timestamp(timestamp)
    except ValueError:
        logger.warning("Unparseable receipt timestamp %r", timestamp)
        return False
    if lower is not None and ts < lower:
        return False
    if upper is not None and ts > upper:
        return False
    return True


def in_time_range(timestamp: str, start: str | None, end: str | None) -> bool:
    """Inclusive range check over ISO-8601 timestamps; open ends are unbounded."""
    lower, upper = time_bounds(start, end)
    return _within(timestamp, lower, upper)


class ConsentStore(ABC):
    """Persists consent gate states and the receipts that changed them."""

    @abstractmethod
    async def get_gates(self) -> dict[str, bool]:
        ...

    @abstractmethod
    async def set_gate(self, gate: str, enabled: bool) -> None:
        ...

    @abstractmethod
    async def record_receipt(self, receipt: Receipt) -> Receipt:
        ...

    @abstractmethod
    async def list_receipts(self, start: str | None = None, end: str | None = None) -> list[Receipt]:
        """Receipts ordered by timestamp, optionally limited to [start, end]."""

    async def issue_receipt(
        self,
        gate: str,
        choice: bool,
        commit: str,
        evidence_hash: str,
        user_id: str | None = None,
    ) -> Receipt:
        """Sign a receipt for a gate decision, store it and apply the choice."""
        receipt = create_receipt(gate, choice, commit, evidence_hash, user_id=user_id)
        await self.record_receipt(receipt)
        await self.set_gate(gate, choice)
        logger.info("Recorded receipt %s for gate %s=%s", receipt.id, gate, choice)
        return receipt


class InMemoryConsentStore(ConsentStore):
    def __init__(self, gates: dict[str, bool] | None = None):
        self._gates: dict[str, bool] = dict(gates or {})
        self._receipts: list[Receipt] = []
        self._lock = asyncio.Lock()

    async def get_gates(self) -> dict[str, bool]:
        async with self._lock:
            return dict(self._gates)

    async def set_gate(self, gate: str, enabled: bool) -> None:
        async with self._lock:
            self._gates[gate] = enabled

    async def record_receipt(self, receipt: Receipt) -> Receipt:
        async with self._lock:
            self._receipts.append(receipt)
        return receipt

    async def list_receipts(self, start: str | None = None, end: str | None = None) -> list[Receipt]:
        lower, upper = time_bounds(start, end)
        async with self._lock:
            receipts = [r for r in self._receipts if _within(r.timestamp, lower, upper)]
        return sorted(receipts, key=lambda r: (parse_timestamp(r.timestamp), r.id))


class SqlConsentStore(ConsentStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_gates(self) -> dict[str, bool]:
        async with self.session_factory() as session:
            result = await session.execute(select(ConsentGate.gate, ConsentGate.enabled))
            return {row[0]: bool(row[1]) for row in result}

    async def set_gate(self, gate: str, enabled: bool) -> None:
        async with self.session_factory() as session:
            existing = (
                await session.execute(select(ConsentGate).where(ConsentGate.gate == gate))
            ).scalar_one_or_none()
            if existing is None:
                session.add(ConsentGate(gate=gate, enabled=enabled))
            else:
                existing.enabled = enabled
            await session.commit()

    async def record_receipt(self, receipt: Receipt) -> Receipt:
        async with self.session_factory() as session:
            session.add(ConsentReceipt(
                receipt_id=receipt.id,
                gate=receipt.gate,
                choice=receipt.choice,
                commit=receipt.commit,
                timestamp=receipt.timestamp,
                evidence_hash=receipt.evidence_hash,
                user_id=receipt.user_id,
                signature=receipt.signature,
            ))
            await session.commit()
        return receipt

    async def list_receipts(self, start: str | None = None, end: str | None = None) -> list[Receipt]:
        lower, upper = time_bounds(start, end)
        async with self.session_factory() as session:
            result = await session.execute(select(ConsentReceipt).order_by(ConsentReceipt.id))
            rows = result.scalars().all()
        receipts = [
            Receipt(
                id=row.receipt_id,
                gate=row.gate,
                choice=row.choice,
                commit=row.commit,
                timestamp=row.timestamp,
                evidence_hash=row.evidence_hash,
                user_id=row.user_id,
                signature=row.signature,
            )
            for row in rows
            if _within(row.timestamp, lower, upper)
        ]
        return sorted(receipts, key=lambda r: (parse_timestamp(r.timestamp), r.id))
