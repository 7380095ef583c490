"""
Ledger registrar: signs and submits contract calls against a record object.

Calls are built against the freshly read object version. When the ledger
rejects a transaction as stale, the registrar re-reads the record and
retries, up to a bounded number of attempts, then surfaces
``RegistrationFailure``. Any other failure is raised immediately.
"""

from __future__ import annotations

import asyncio
from typing import Any

from healthvault.core.errors import RegistrationFailure, StaleObjectError
from healthvault.core.logging import get_logger
from healthvault.core.security.identity import SignerContext, ensure_session
from healthvault.modules.blobstore.models import BlobReference
from healthvault.modules.ledger.backend import LedgerBackend
from healthvault.modules.ledger.contract import HealthRecordContract
from healthvault.modules.ledger.models import (
    RecordState,
    SignedTransaction,
    Transaction,
    TxReceipt,
)

logger = get_logger(__name__)


class LedgerRegistrar:
    """Append-only registration of blob references plus the generic call primitive."""

    def __init__(
        self,
        backend: LedgerBackend,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.05,
        timeout: float = 10.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.backend = backend
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._timeout = timeout

    async def read_record(self, record_id: str) -> RecordState:
        return await self.backend.get_record(record_id)

    async def find_record(self, owner: str) -> RecordState | None:
        return await self.backend.find_record(owner)

    async def create_record(self, context: SignerContext, *, policy_id: str) -> TxReceipt:
        """Create the record object owned by the signing identity."""
        ensure_session(context)
        tx = Transaction(
            sender=context.identity,
            function=HealthRecordContract.CREATE_RECORD,
            arguments={"policy_id": policy_id},
        )
        receipt = await self._submit(self._sign(tx, context))
        logger.info("ledger_record_created", record_id=receipt.object_id, owner=context.identity)
        return receipt

    async def register_reference(
        self,
        record_id: str,
        blob_ref: BlobReference,
        checksum: str,
        record_type: str,
        context: SignerContext,
    ) -> TxReceipt:
        """Append a ``LedgerRecordUpdate`` for an already-stored blob."""
        receipt = await self.call(
            "append_encrypted_data",
            {
                "blob_ref": blob_ref.model_dump(mode="json"),
                "checksum": checksum,
                "record_type": record_type,
            },
            context,
            record_id=record_id,
        )
        logger.info(
            "ledger_reference_registered",
            record_id=record_id,
            blob_id=blob_ref.blob_id,
            tx_digest=receipt.tx_digest,
        )
        return receipt

    async def call(
        self,
        function: str,
        arguments: dict[str, Any],
        context: SignerContext,
        *,
        record_id: str,
    ) -> TxReceipt:
        """Sign and execute ``function`` against the latest version of ``record_id``."""
        for attempt in range(1, self._max_attempts + 1):
            ensure_session(context)
            record = await self.read_record(record_id)
            tx = Transaction(
                sender=context.identity,
                function=function,
                object_id=record_id,
                object_version=record.version,
                arguments=arguments,
            )
            try:
                return await self._submit(self._sign(tx, context))
            except StaleObjectError as exc:
                logger.warning(
                    "ledger_tx_stale_version",
                    function=function,
                    record_id=record_id,
                    version=record.version,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                )
                if attempt == self._max_attempts:
                    raise RegistrationFailure(
                        f"{function} on {record_id} kept conflicting after {attempt} attempts"
                    ) from exc
                await asyncio.sleep(self._backoff_seconds * attempt)

        raise RegistrationFailure(f"{function} on {record_id} was not attempted")

    @staticmethod
    def _sign(tx: Transaction, context: SignerContext) -> SignedTransaction:
        return SignedTransaction(transaction=tx, signature=context.signer.sign(tx.signing_bytes()))

    async def _submit(self, signed: SignedTransaction) -> TxReceipt:
        try:
            return await asyncio.wait_for(self.backend.execute(signed), timeout=self._timeout)
        except TimeoutError as exc:
            raise RegistrationFailure(
                f"{signed.transaction.function} timed out after {self._timeout}s"
            ) from exc
