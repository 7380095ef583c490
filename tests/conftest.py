"""
Pytest fixtures for pipeline testing.
Provides a controllable clock, registered identities, and an in-memory
ledger, blob store and key-server pool wired into a pipeline.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from healthvault.core.config import Settings
from healthvault.core.security.identity import CapabilityKind, KeypairSigner, SignerContext
from healthvault.modules.blobstore.client import InMemoryBlobStore
from healthvault.modules.encryption.key_servers import KeyServer
from healthvault.modules.ledger.backend import InMemoryLedger
from healthvault.modules.ledger.models import RecordState
from healthvault.modules.records.pipeline import (
    HealthRecordPipeline,
    create_in_memory_ledger,
    create_local_key_servers,
    create_pipeline,
)
from healthvault.modules.records.schemas import HealthRecordPayload, RecordMetadata

PATIENT = "0xa11ce"
DOCTOR = "0xd0c70"
EMERGENCY_DOCTOR = "0xe3e76"
UNAUTHORIZED = "0xbad"
CONTRACT_ADDRESS = "0xc0ffee"


class FrozenClock:
    """Deterministic clock shared by the ledger, verifiers and signers."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ledger_package_id=CONTRACT_ADDRESS,
        key_server_threshold=2,
        ledger_retry_backoff_seconds=0,
        stage_timeout_seconds=5.0,
    )


@pytest.fixture
def signers(clock: FrozenClock) -> dict[str, KeypairSigner]:
    return {
        identity: KeypairSigner.generate(identity, clock=clock)
        for identity in (PATIENT, DOCTOR, EMERGENCY_DOCTOR, UNAUTHORIZED)
    }


@pytest.fixture
def patient_ctx(signers: dict[str, KeypairSigner]) -> SignerContext:
    return SignerContext.of(signers[PATIENT])


@pytest.fixture
def doctor_ctx(signers: dict[str, KeypairSigner]) -> SignerContext:
    return SignerContext.of(signers[DOCTOR], {CapabilityKind.DOCTOR})


@pytest.fixture
def emergency_ctx(signers: dict[str, KeypairSigner]) -> SignerContext:
    return SignerContext.of(
        signers[EMERGENCY_DOCTOR], {CapabilityKind.DOCTOR, CapabilityKind.MASTER_KEY}
    )


@pytest.fixture
def unauthorized_ctx(signers: dict[str, KeypairSigner]) -> SignerContext:
    return SignerContext.of(signers[UNAUTHORIZED])


@pytest.fixture
def ledger(
    settings: Settings, clock: FrozenClock, signers: dict[str, KeypairSigner]
) -> InMemoryLedger:
    ledger = create_in_memory_ledger(settings, clock=clock)
    ledger.register_account(PATIENT, signers[PATIENT].public_key_pem)
    ledger.register_account(DOCTOR, signers[DOCTOR].public_key_pem, {CapabilityKind.DOCTOR})
    ledger.register_account(
        EMERGENCY_DOCTOR,
        signers[EMERGENCY_DOCTOR].public_key_pem,
        {CapabilityKind.DOCTOR, CapabilityKind.MASTER_KEY},
    )
    ledger.register_account(UNAUTHORIZED, signers[UNAUTHORIZED].public_key_pem)
    return ledger


@pytest.fixture
def blob_store(settings: Settings, clock: FrozenClock) -> InMemoryBlobStore:
    return InMemoryBlobStore(max_bytes=settings.blob_max_bytes, clock=clock)


@pytest.fixture
def key_servers(ledger: InMemoryLedger, clock: FrozenClock) -> list[KeyServer]:
    return create_local_key_servers(ledger, 3, clock=clock)


@pytest.fixture
def pipeline(
    settings: Settings,
    ledger: InMemoryLedger,
    blob_store: InMemoryBlobStore,
    key_servers: list[KeyServer],
    clock: FrozenClock,
) -> HealthRecordPipeline:
    return create_pipeline(
        settings,
        ledger=ledger,
        blob_store=blob_store,
        key_servers=key_servers,
        clock=clock,
    )


@pytest_asyncio.fixture
async def patient_record(
    pipeline: HealthRecordPipeline, patient_ctx: SignerContext
) -> RecordState:
    return await pipeline.create_record(patient_ctx)


@pytest.fixture
def make_payload() -> Callable[..., HealthRecordPayload]:
    def factory(**overrides: object) -> HealthRecordPayload:
        data: dict[str, object] = {
            "report_id": "rpt-0001",
            "report_type": "lab",
            "title": "Complete blood count",
            "description": "Routine panel",
            "findings": "All values within reference range.",
            "recommendations": "Repeat in 12 months.",
            "metadata": RecordMetadata(author=DOCTOR, department="Hematology"),
        }
        data.update(overrides)
        return HealthRecordPayload.model_validate(data)

    return factory
