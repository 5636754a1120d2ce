import pytest
import sqlalchemy as sa

from sp_validator.core.errors import ValidationNotFound
from sp_validator.models.validation import ValidationStatus
from sp_validator.services.validation_store import InvalidStatusTransition, ValidationStore

CREDENTIALS = {
    "tenant_id": "tenant-1",
    "client_id": "client-1",
    "client_secret": "very-secret",
    "display_name": "deployer",
}
REPORT = {"is_valid": True, "permissions": {}, "errors": [], "storage_account_name": None, "website_url": None}


async def create_record(db, **kwargs):
    kwargs.setdefault("credentials", CREDENTIALS)
    kwargs.setdefault("subscription_id", "sub-1")
    kwargs.setdefault("test_config", {"resource_group": "rg", "location": "eastus"})
    record, _ = await ValidationStore(db).create(**kwargs)
    return record


@pytest.mark.asyncio
async def test_create_starts_pending_without_report(db):
    record = await create_record(db, webhook_url="https://example.com/hook")

    assert record.status == ValidationStatus.PENDING.value
    assert record.report is None
    assert record.started_at is None
    assert record.completed_at is None
    assert record.tenant_id == "tenant-1"
    assert record.credentials == CREDENTIALS


@pytest.mark.asyncio
async def test_credentials_are_encrypted_at_rest(db):
    record = await create_record(db)

    raw = (await db.execute(sa.text("SELECT credentials FROM validations WHERE id = :id"), {"id": record.id})).scalar_one()

    assert "very-secret" not in raw
    assert "client_secret" not in raw


@pytest.mark.asyncio
async def test_caller_supplied_id_makes_create_idempotent(db):
    store = ValidationStore(db)
    first, created_first = await store.create(
        credentials=CREDENTIALS, subscription_id="sub-1", test_config={}, validation_id="client-chosen-1"
    )
    second, created_second = await store.create(
        credentials=CREDENTIALS, subscription_id="sub-2", test_config={}, validation_id="client-chosen-1"
    )

    assert created_first is True
    assert created_second is False
    assert first.id == second.id == "client-chosen-1"
    assert second.subscription_id == "sub-1"


@pytest.mark.asyncio
async def test_mark_in_progress_sets_started_at_once(db):
    record = await create_record(db)
    store = ValidationStore(db)

    first = await store.mark_in_progress(record.id)
    started_at = first.started_at
    second = await store.mark_in_progress(record.id)

    assert first.status == ValidationStatus.IN_PROGRESS.value
    assert started_at is not None
    assert second.started_at == started_at


@pytest.mark.asyncio
async def test_complete_writes_terminal_state_exactly_once(db):
    record = await create_record(db)
    store = ValidationStore(db)
    await store.mark_in_progress(record.id)

    completed, applied = await store.complete(record.id, ValidationStatus.VALID, REPORT)
    completed_at = completed.completed_at
    again, applied_again = await store.complete(
        record.id, ValidationStatus.FAILED, {"is_valid": False, "permissions": {}, "errors": ["late"]}
    )

    assert applied is True
    assert completed.status == "valid"
    assert completed.report == REPORT
    assert completed_at is not None
    assert applied_again is False
    assert again.status == "valid"
    assert again.report == REPORT
    assert again.completed_at == completed_at


@pytest.mark.asyncio
async def test_terminal_status_cannot_skip_in_progress(db):
    record = await create_record(db)

    with pytest.raises(InvalidStatusTransition):
        await ValidationStore(db).complete(record.id, ValidationStatus.INVALID, REPORT)


@pytest.mark.asyncio
async def test_complete_requires_terminal_status(db):
    record = await create_record(db)

    with pytest.raises(ValueError):
        await ValidationStore(db).complete(record.id, ValidationStatus.IN_PROGRESS, REPORT)


@pytest.mark.asyncio
async def test_terminal_record_is_not_moved_back_to_in_progress(db):
    record = await create_record(db)
    store = ValidationStore(db)
    await store.mark_in_progress(record.id)
    await store.complete(record.id, ValidationStatus.INVALID, REPORT)

    again = await store.mark_in_progress(record.id)

    assert again.status == "invalid"
    assert again.is_terminal


@pytest.mark.asyncio
async def test_unknown_id_raises_not_found(db):
    with pytest.raises(ValidationNotFound):
        await ValidationStore(db).get_or_404("does-not-exist")


def test_transition_table_is_monotonic():
    from sp_validator.models.validation import ALLOWED_TRANSITIONS, TERMINAL_VALIDATION_STATES

    for state in TERMINAL_VALIDATION_STATES:
        assert ALLOWED_TRANSITIONS[state] == frozenset()
    assert ALLOWED_TRANSITIONS[ValidationStatus.PENDING] == {ValidationStatus.IN_PROGRESS}
