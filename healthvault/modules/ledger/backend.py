"""
Ledger backends.

``InMemoryLedger`` is the authoritative emulation of the health-record
contract: it verifies transaction signatures against registered accounts,
enforces optimistic object versioning, and chains every emitted event.
``JsonRpcLedger`` speaks JSON-RPC 2.0 to a ledger node exposing the same
contract and maps abort codes back onto the error taxonomy.
"""

from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

import httpx

from healthvault.core.crypto.hash_chain import GENESIS_HASH, compute_event_hash
from healthvault.core.crypto.signing import verify_message
from healthvault.core.crypto.verification import ChainVerificationResult, verify_hash_chain
from healthvault.core.errors import (
    HealthVaultError,
    InvalidState,
    PermissionDenied,
    RecordNotFound,
    RegistrationFailure,
    StaleObjectError,
    error_for_code,
)
from healthvault.core.logging import get_logger
from healthvault.core.security.identity import CapabilityKind
from healthvault.modules.ledger.contract import CallContext, ContractOutcome, HealthRecordContract
from healthvault.modules.ledger.models import (
    Account,
    LedgerEvent,
    LedgerEventType,
    RecordState,
    SignedTransaction,
    TxReceipt,
)

logger = get_logger(__name__)


class LedgerBackend(ABC):
    """Read and execute primitives the registrar and verifiers depend on."""

    @abstractmethod
    async def get_record(self, record_id: str) -> RecordState:
        """Return the current record object; raises ``RecordNotFound``."""

    @abstractmethod
    async def find_record(self, owner: str) -> RecordState | None:
        """Return the record owned by ``owner``, if one exists."""

    @abstractmethod
    async def get_account(self, identity: str) -> Account | None: ...

    @abstractmethod
    async def execute(self, signed: SignedTransaction) -> TxReceipt:
        """Verify, apply and commit a signed transaction atomically."""

    @abstractmethod
    async def query_events(
        self,
        event_type: LedgerEventType | None = None,
        *,
        record_id: str | None = None,
        limit: int | None = None,
        descending: bool = True,
    ) -> list[LedgerEvent]:
        """Events of ``event_type`` about ``record_id``; ``limit`` applies after both filters."""

    async def verify_chain(self) -> ChainVerificationResult:
        """Re-verify the event hash chain from genesis."""
        events = await self.query_events(None, limit=None, descending=False)
        return verify_hash_chain([event.model_dump(mode="json") for event in events])

    async def close(self) -> None:
        """Release transport resources; a no-op for in-process ledgers."""


class InMemoryLedger(LedgerBackend):
    """In-process ledger holding record objects, accounts and the event chain."""

    def __init__(
        self,
        contract: HealthRecordContract,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.contract = contract
        self.clock = clock or (lambda: datetime.now(UTC))
        self._records: dict[str, RecordState] = {}
        self._owner_index: dict[str, str] = {}
        self._accounts: dict[str, Account] = {}
        self._events: list[LedgerEvent] = []
        self._seen_digests: set[str] = set()
        self._lock = asyncio.Lock()
        self.executed_functions: list[str] = []

    # ------------------------------------------------------------------
    # Genesis
    # ------------------------------------------------------------------

    def register_account(
        self,
        identity: str,
        public_key_pem: str,
        capabilities: Iterable[CapabilityKind] = (),
    ) -> Account:
        account = Account(
            identity=identity,
            public_key_pem=public_key_pem,
            capabilities=set(capabilities),
        )
        self._accounts[identity] = account
        logger.info(
            "ledger_account_registered",
            identity=identity,
            capabilities=sorted(c.value for c in account.capabilities),
        )
        return account

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_record(self, record_id: str) -> RecordState:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFound(f"record {record_id} does not exist")
        return record.model_copy(deep=True)

    async def find_record(self, owner: str) -> RecordState | None:
        record_id = self._owner_index.get(owner)
        if record_id is None:
            return None
        return await self.get_record(record_id)

    async def get_account(self, identity: str) -> Account | None:
        account = self._accounts.get(identity)
        return account.model_copy(deep=True) if account is not None else None

    async def query_events(
        self,
        event_type: LedgerEventType | None = None,
        *,
        record_id: str | None = None,
        limit: int | None = None,
        descending: bool = True,
    ) -> list[LedgerEvent]:
        events = [
            e
            for e in self._events
            if (event_type is None or e.event_type is event_type)
            and (record_id is None or e.fields.get("record_id") == record_id)
        ]
        if descending:
            events.reverse()
        if limit is not None:
            events = events[:limit]
        return [event.model_copy(deep=True) for event in events]

    @property
    def event_count(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, signed: SignedTransaction) -> TxReceipt:
        async with self._lock:
            tx = signed.transaction
            digest = signed.digest
            try:
                account = self._authenticate(signed)
                if digest in self._seen_digests:
                    raise InvalidState(f"transaction {digest} was already executed")
                ctx = CallContext(sender=account, now=self.clock(), tx_digest=digest)
                outcome = self._apply(
                    tx.function, tx.object_id, tx.object_version, ctx, tx.arguments
                )
            except HealthVaultError as exc:
                logger.info(
                    "ledger_tx_aborted",
                    function=tx.function,
                    sender=tx.sender,
                    object_id=tx.object_id,
                    code=exc.code,
                )
                raise

            record = outcome.record
            self._records[record.record_id] = record
            self._owner_index.setdefault(record.owner, record.record_id)
            self._seen_digests.add(digest)
            self.executed_functions.append(tx.function)
            events = [
                self._append_event(digest, ctx, index, event_type, fields)
                for index, (event_type, fields) in enumerate(outcome.events)
            ]

        logger.info(
            "ledger_tx_committed",
            function=tx.function,
            sender=tx.sender,
            object_id=record.record_id,
            version=record.version,
            tx_digest=digest,
        )
        return TxReceipt(
            tx_digest=digest,
            object_id=record.record_id,
            object_version=record.version,
            events=[event.model_copy(deep=True) for event in events],
            effects=dict(outcome.effects),
        )

    def _authenticate(self, signed: SignedTransaction) -> Account:
        tx = signed.transaction
        account = self._accounts.get(tx.sender)
        if account is None:
            raise PermissionDenied(f"sender {tx.sender} has no registered account")
        if not verify_message(tx.signing_bytes(), signed.signature, account.public_key_pem):
            raise PermissionDenied(f"invalid transaction signature from {tx.sender}")
        return account

    def _apply(
        self,
        function: str,
        object_id: str | None,
        object_version: int | None,
        ctx: CallContext,
        arguments: dict[str, Any],
    ) -> ContractOutcome:
        if function == HealthRecordContract.CREATE_RECORD:
            if ctx.sender.identity in self._owner_index:
                raise InvalidState(f"{ctx.sender.identity} already owns a record")
            return self.contract.create_record(ctx, arguments)

        if object_id is None:
            raise InvalidState(f"{function} requires a record object")
        current = self._records.get(object_id)
        if current is None:
            raise RecordNotFound(f"record {object_id} does not exist")
        if object_version != current.version:
            raise StaleObjectError(
                f"record {object_id} is at version {current.version}, "
                f"transaction was built against {object_version}"
            )
        outcome = self.contract.invoke(function, ctx, current, arguments)
        outcome.record.version = current.version + 1
        return outcome

    def _append_event(
        self,
        tx_digest: str,
        ctx: CallContext,
        index: int,
        event_type: LedgerEventType,
        fields: dict[str, Any],
    ) -> LedgerEvent:
        prev_hash = self._events[-1].event_hash if self._events else GENESIS_HASH
        event = LedgerEvent(
            id=f"{tx_digest}:{index}",
            tx_digest=tx_digest,
            event_type=event_type,
            timestamp=ctx.now,
            sender=ctx.sender.identity,
            fields=fields,
        )
        event.prev_event_hash = prev_hash
        event.chain_sequence = len(self._events)
        event.event_hash = compute_event_hash(event.hashable_data(), prev_hash or GENESIS_HASH)
        self._events.append(event)
        return event


class JsonRpcLedger(LedgerBackend):
    """JSON-RPC 2.0 client for a ledger node hosting the health-record contract."""

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self._ids = itertools.count(1)

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _rpc(self, method: str, params: dict[str, Any]) -> Any:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            response = await self._get_client().post(self._rpc_url, json=body)
        except httpx.TimeoutException as exc:
            raise RegistrationFailure(f"ledger call {method} timed out") from exc
        except httpx.HTTPError as exc:
            raise RegistrationFailure(f"ledger call {method} failed: {exc}") from exc

        if response.status_code >= 400:
            raise RegistrationFailure(f"ledger node returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise RegistrationFailure("ledger node returned a non-JSON response") from exc

        error = payload.get("error")
        if error:
            message = str(error.get("message", "ledger error"))
            data = error.get("data") or {}
            abort_code = data.get("abort") if isinstance(data, dict) else None
            logger.info("ledger_rpc_error", method=method, abort=abort_code, message=message)
            if abort_code:
                raise error_for_code(str(abort_code), message)
            raise RegistrationFailure(message)
        return payload.get("result")

    async def get_record(self, record_id: str) -> RecordState:
        result = await self._rpc("hv_getRecord", {"record_id": record_id})
        if result is None:
            raise RecordNotFound(f"record {record_id} does not exist")
        return RecordState.model_validate(result)

    async def find_record(self, owner: str) -> RecordState | None:
        result = await self._rpc("hv_findRecord", {"owner": owner})
        return RecordState.model_validate(result) if result is not None else None

    async def get_account(self, identity: str) -> Account | None:
        result = await self._rpc("hv_getAccount", {"identity": identity})
        return Account.model_validate(result) if result is not None else None

    async def execute(self, signed: SignedTransaction) -> TxReceipt:
        result = await self._rpc("hv_executeTransaction", signed.model_dump(mode="json"))
        return TxReceipt.model_validate(result)

    async def query_events(
        self,
        event_type: LedgerEventType | None = None,
        *,
        record_id: str | None = None,
        limit: int | None = None,
        descending: bool = True,
    ) -> list[LedgerEvent]:
        params: dict[str, Any] = {"descending": descending}
        if event_type is not None:
            params["event_type"] = event_type.value
        if record_id is not None:
            params["record_id"] = record_id
        if limit is not None:
            params["limit"] = limit
        result = await self._rpc("hv_queryEvents", params)
        return [LedgerEvent.model_validate(item) for item in result or []]
