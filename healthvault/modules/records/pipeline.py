"""
Record pipeline: the write and read paths across encryption, blob storage
and the ledger, plus the access-control and audit operations exposed to UI
and CLI collaborators.

Write path::

    encrypt -> checksum -> upload -> register

Read path::

    read record -> authorize -> download -> verify checksum -> decrypt

Each stage runs under its own timeout and fails with a typed error tagged
with the stage name. A failure stops the invocation: nothing is registered
on the ledger unless the upload it points to has succeeded. Cancellation is
never intercepted and never retried.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

import httpx

from healthvault.core.config import Settings, get_settings
from healthvault.core.errors import (
    BlobTransportError,
    EncryptionFailure,
    HealthVaultError,
    PermissionDenied,
    RecordNotFound,
    RegistrationFailure,
    UploadFailure,
)
from healthvault.core.logging import get_logger, pipeline_context
from healthvault.core.security.identity import SignerContext, ensure_session
from healthvault.modules.access import rules
from healthvault.modules.access.proofs import LedgerAccessVerifier
from healthvault.modules.access.state_machine import AccessControlStateMachine
from healthvault.modules.audit.projector import AuditTrailProjector
from healthvault.modules.audit.schemas import AuditEvent, AuditSummary, ComplianceReport
from healthvault.modules.blobstore.client import BlobStoreClient, HttpBlobStoreClient
from healthvault.modules.blobstore.models import BlobMetadata
from healthvault.modules.checksum.service import ChecksumService
from healthvault.modules.encryption.envelope import SCHEME
from healthvault.modules.encryption.gateway import EncryptionGateway
from healthvault.modules.encryption.key_servers import HttpKeyServer, KeyServer, LocalKeyServer
from healthvault.modules.encryption.policy import RETENTION_PERIOD
from healthvault.modules.ledger.backend import InMemoryLedger, JsonRpcLedger, LedgerBackend
from healthvault.modules.ledger.contract import HealthRecordContract
from healthvault.modules.ledger.models import (
    AccessLevel,
    AccessRequest,
    EmergencyAccess,
    Permission,
    RecordState,
)
from healthvault.modules.ledger.registrar import LedgerRegistrar
from healthvault.modules.records.schemas import (
    HealthRecordPayload,
    ProcessedRecord,
    RetrievedRecord,
)

logger = get_logger(__name__)

T = TypeVar("T")


class PipelineStage(str, Enum):
    SESSION = "session"
    RESOLVE_RECORD = "resolve_record"
    ENCRYPT = "encrypt"
    CHECKSUM = "checksum"
    UPLOAD = "upload"
    REGISTER = "register"
    READ_RECORD = "read_record"
    AUTHORIZE = "authorize"
    DOWNLOAD = "download"
    VERIFY = "verify"
    DECRYPT = "decrypt"


_TIMEOUT_ERRORS: dict[PipelineStage, type[HealthVaultError]] = {
    PipelineStage.ENCRYPT: EncryptionFailure,
    PipelineStage.DECRYPT: EncryptionFailure,
    PipelineStage.UPLOAD: UploadFailure,
    PipelineStage.DOWNLOAD: BlobTransportError,
}


class HealthRecordPipeline:
    """Facade over the gateway, blob store, registrar, state machine and projector."""

    def __init__(
        self,
        *,
        gateway: EncryptionGateway,
        blob_store: BlobStoreClient,
        registrar: LedgerRegistrar,
        access: AccessControlStateMachine,
        projector: AuditTrailProjector,
        checksum: ChecksumService | None = None,
        threshold: int = 2,
        stage_timeout: float = 60.0,
        compliance_tags: Sequence[str] = ("GDPR", "KVKK", "HIPAA"),
    ) -> None:
        self.gateway = gateway
        self.blob_store = blob_store
        self.registrar = registrar
        self.access = access
        self.projector = projector
        self.checksum = checksum or ChecksumService()
        self.threshold = threshold
        self._stage_timeout = stage_timeout
        self._compliance_tags = list(compliance_tags)

    async def _stage(self, stage: PipelineStage, operation: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(operation, timeout=self._stage_timeout)
        except TimeoutError as exc:
            error_cls = _TIMEOUT_ERRORS.get(stage, RegistrationFailure)
            logger.warning("pipeline_stage_timeout", stage=stage.value, timeout=self._stage_timeout)
            raise error_cls(
                f"{stage.value} did not complete within {self._stage_timeout}s",
                stage=stage.value,
            ) from exc
        except HealthVaultError as exc:
            if exc.stage is None:
                exc.stage = stage.value
            logger.info("pipeline_stage_failed", stage=exc.stage, code=exc.code, error=exc.message)
            raise

    @staticmethod
    def _session(context: SignerContext) -> None:
        try:
            ensure_session(context)
        except HealthVaultError as exc:
            exc.stage = PipelineStage.SESSION.value
            raise

    # ------------------------------------------------------------------
    # Record lifecycle
    # ------------------------------------------------------------------

    async def create_record(self, context: SignerContext) -> RecordState:
        """Create the caller's record object, bound to their encryption policy."""
        self._session(context)
        policy = self.gateway.build_policy(context.identity, self.threshold)
        receipt = await self._stage(
            PipelineStage.REGISTER,
            self.registrar.create_record(context, policy_id=policy.policy_id),
        )
        return await self.registrar.read_record(str(receipt.object_id))

    async def process_record(
        self,
        payload: HealthRecordPayload | dict[str, Any],
        patient_identity: str,
        context: SignerContext,
        *,
        record_type: str | None = None,
    ) -> ProcessedRecord:
        """Encrypt, upload and register ``payload`` against the patient's record."""
        with pipeline_context(
            "process_record", patient=patient_identity, actor=context.identity
        ):
            return await self._write(payload, patient_identity, context, record_type)

    async def _write(
        self,
        payload: HealthRecordPayload | dict[str, Any],
        patient_identity: str,
        context: SignerContext,
        record_type: str | None,
    ) -> ProcessedRecord:
        self._session(context)
        plaintext, report_id, default_type = _serialize_payload(payload)
        record_type = record_type or default_type

        record = await self._stage(
            PipelineStage.RESOLVE_RECORD, self._resolve_for_append(patient_identity, context)
        )
        encrypted = await self._stage(
            PipelineStage.ENCRYPT,
            self.gateway.encrypt(plaintext, patient_identity, self.threshold),
        )
        digest = self.checksum.digest(encrypted.ciphertext)

        metadata = BlobMetadata(
            content_type="application/octet-stream",
            encryption_scheme=SCHEME,
            policy_id=encrypted.policy_id,
            patient_address=patient_identity,
            report_id=report_id,
            compliance_tags=self._compliance_tags,
            retention=RETENTION_PERIOD,
            sha256=digest,
        )
        blob_ref = await self._stage(
            PipelineStage.UPLOAD, self.blob_store.put(encrypted.ciphertext, metadata)
        )
        receipt = await self._stage(
            PipelineStage.REGISTER,
            self.registrar.register_reference(
                record.record_id, blob_ref, digest, record_type, context
            ),
        )

        logger.info(
            "record_processed",
            record_id=record.record_id,
            blob_id=blob_ref.blob_id,
            tx_digest=receipt.tx_digest,
            author=context.identity,
        )
        return ProcessedRecord(
            record_id=record.record_id,
            blob_ref=blob_ref,
            checksum=digest,
            policy_id=encrypted.policy_id,
            tx_digest=receipt.tx_digest,
            ciphertext_size=len(encrypted.ciphertext),
            plaintext_size=len(plaintext),
        )

    async def _resolve_for_append(
        self, patient_identity: str, context: SignerContext
    ) -> RecordState:
        record = await self.registrar.find_record(patient_identity)
        if record is None:
            raise RecordNotFound(f"{patient_identity} has no record")
        rules.ensure_can_append(
            record, context.identity, context.capabilities, self.access.now()
        )
        return record

    async def retrieve_record(
        self,
        record_id: str,
        context: SignerContext,
        *,
        blob_id: str | None = None,
    ) -> RetrievedRecord:
        """Authorize, download, verify and decrypt a registered record entry.

        ``blob_id`` selects a specific entry; the latest one is used otherwise.
        """
        with pipeline_context("retrieve_record", record_id=record_id, actor=context.identity):
            return await self._read(record_id, context, blob_id)

    async def _read(
        self, record_id: str, context: SignerContext, blob_id: str | None
    ) -> RetrievedRecord:
        self._session(context)
        record = await self._stage(PipelineStage.READ_RECORD, self.registrar.read_record(record_id))
        reference = record.reference_for(blob_id) if blob_id else record.latest_reference
        if reference is None:
            raise RecordNotFound(
                f"record {record_id} has no registered data"
                + (f" for blob {blob_id}" if blob_id else ""),
                stage=PipelineStage.READ_RECORD.value,
            )
        target_blob = reference.blob_ref.blob_id

        proof = await self._stage(
            PipelineStage.AUTHORIZE,
            self.access.authorize(context, record_id, blob_id=target_blob),
        )
        ciphertext = await self._stage(PipelineStage.DOWNLOAD, self.blob_store.get(target_blob))
        try:
            self.checksum.ensure(ciphertext, reference.checksum, blob_id=target_blob)
        except HealthVaultError as exc:
            exc.stage = PipelineStage.VERIFY.value
            raise

        try:
            plaintext = await self._stage(
                PipelineStage.DECRYPT,
                self.gateway.decrypt(ciphertext, record.owner, proof),
            )
        except PermissionDenied as exc:
            await self.access.record_denial(context, record_id, f"key servers refused: {exc}")
            raise

        try:
            payload = json.loads(plaintext)
        except ValueError as exc:
            raise EncryptionFailure(
                "decrypted payload is not valid JSON", stage=PipelineStage.DECRYPT.value
            ) from exc

        logger.info(
            "record_retrieved",
            record_id=record_id,
            blob_id=target_blob,
            requester=context.identity,
            grant_kind=proof.grant_kind.value,
        )
        return RetrievedRecord(
            record_id=record_id,
            blob_id=target_blob,
            payload=payload,
            tx_digest=reference.tx_digest,
        )

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    async def request_access(
        self,
        context: SignerContext,
        record_id: str,
        reason: str,
        level: AccessLevel = AccessLevel.READ_ONLY,
    ) -> AccessRequest:
        self._session(context)
        return await self.access.request_access(context, record_id, reason, level)

    async def grant_access(self, context: SignerContext, request_id: str) -> Permission:
        self._session(context)
        return await self.access.grant_access(context, request_id)

    async def deny_access(
        self, context: SignerContext, request_id: str, reason: str | None = None
    ) -> AccessRequest:
        self._session(context)
        return await self.access.deny_access(context, request_id, reason)

    async def revoke_access(
        self, context: SignerContext, grant_id: str
    ) -> Permission | EmergencyAccess:
        self._session(context)
        return await self.access.revoke_access(context, grant_id)

    async def emergency_access(
        self, context: SignerContext, record_id: str, reason: str
    ) -> EmergencyAccess:
        self._session(context)
        return await self.access.emergency_access(context, record_id, reason)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def audit_trail(self, record_id: str, limit: int | None = None) -> list[AuditEvent]:
        return await self.projector.events(record_id, limit)

    async def audit_summary(self, record_id: str) -> AuditSummary:
        return await self.projector.summary(record_id)

    async def compliance_report(
        self, record_id: str, start: datetime, end: datetime
    ) -> ComplianceReport:
        return await self.projector.report(record_id, start, end)

    async def close(self) -> None:
        await self.blob_store.close()
        await self.registrar.backend.close()
        await self.gateway.close()


def _serialize_payload(
    payload: HealthRecordPayload | dict[str, Any],
) -> tuple[bytes, str | None, str]:
    if isinstance(payload, HealthRecordPayload):
        return payload.to_bytes(), payload.report_id, payload.report_type
    data = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    report_id = payload.get("report_id") or payload.get("reportId")
    record_type = payload.get("report_type") or payload.get("reportType") or "health_record"
    return data, str(report_id) if report_id else None, str(record_type)


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------


def build_contract(settings: Settings) -> HealthRecordContract:
    return HealthRecordContract(
        request_ttl=timedelta(days=settings.access_request_ttl_days),
        permission_ttl=timedelta(days=settings.permission_ttl_days),
    )


def create_in_memory_ledger(
    settings: Settings | None = None,
    *,
    clock: Callable[[], datetime] | None = None,
) -> InMemoryLedger:
    settings = settings or get_settings()
    return InMemoryLedger(build_contract(settings), clock=clock)


def create_local_key_servers(
    ledger: LedgerBackend,
    count: int,
    *,
    clock: Callable[[], datetime] | None = None,
) -> list[KeyServer]:
    """Independent in-process key servers, each with its own ledger verifier."""
    return [
        LocalKeyServer(f"key-server-{index}", LedgerAccessVerifier(ledger, clock=clock))
        for index in range(1, count + 1)
    ]


def create_pipeline(
    settings: Settings | None = None,
    *,
    ledger: LedgerBackend | None = None,
    blob_store: BlobStoreClient | None = None,
    key_servers: Sequence[KeyServer] | None = None,
    clock: Callable[[], datetime] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> HealthRecordPipeline:
    """Wire a pipeline from settings.

    Collaborators not passed in are built as HTTP clients from ``settings``.
    """
    settings = settings or get_settings()

    if ledger is None:
        ledger = JsonRpcLedger(
            settings.ledger_rpc_url,
            timeout=settings.ledger_request_timeout,
            http_client=http_client,
        )
    if blob_store is None:
        blob_store = HttpBlobStoreClient(
            settings.blob_publisher_url,
            settings.blob_aggregator_url,
            max_bytes=settings.blob_max_bytes,
            epochs=settings.blob_storage_epochs,
            timeout=settings.blob_request_timeout,
            http_client=http_client,
            clock=clock,
        )
    if key_servers is None:
        key_servers = [
            HttpKeyServer(
                f"key-server-{index}",
                url,
                timeout=settings.key_server_timeout,
                http_client=http_client,
            )
            for index, url in enumerate(settings.key_server_url_list, start=1)
        ]
    if not key_servers:
        raise ValueError("no key servers configured; set KEY_SERVER_URLS")

    registrar = LedgerRegistrar(
        ledger,
        max_attempts=settings.ledger_registration_max_attempts,
        backoff_seconds=settings.ledger_retry_backoff_seconds,
        timeout=settings.ledger_request_timeout,
    )
    access = AccessControlStateMachine(
        registrar,
        request_ttl=timedelta(days=settings.access_request_ttl_days),
        proof_ttl=timedelta(seconds=settings.access_proof_ttl_seconds),
        clock=clock,
    )
    gateway = EncryptionGateway(
        key_servers,
        contract_address=settings.ledger_package_id,
        compliance_tags=settings.encryption_compliance_tags,
        timeout=settings.key_server_timeout,
    )
    projector = AuditTrailProjector(
        ledger,
        default_limit=settings.audit_default_limit,
        summary_limit=settings.audit_summary_limit,
        report_limit=settings.audit_report_limit,
        clock=clock,
    )
    logger.info(
        "pipeline_configured",
        ledger=type(ledger).__name__,
        blob_store=type(blob_store).__name__,
        key_servers=len(key_servers),
        threshold=settings.key_server_threshold,
    )
    return HealthRecordPipeline(
        gateway=gateway,
        blob_store=blob_store,
        registrar=registrar,
        access=access,
        projector=projector,
        threshold=settings.key_server_threshold,
        stage_timeout=settings.stage_timeout_seconds,
        compliance_tags=settings.encryption_compliance_tags,
    )
