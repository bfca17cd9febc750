import pytest

from dal.persona_dal import RequestSnapshotDAL, ResultRecordDAL, StorageError
from models.persona_records import RequestSnapshot, ResultRecord, StructuredRecord, compute_fingerprint
from services.persona_library import KNOWLEDGE_BASE_FIELD, REFERENCE_IMAGE_FIELD, RequestLibrary


def snapshot(**overrides):
    fields = {
        "concept": "A retired lighthouse keeper who collects shipwreck stories",
        "subject_name": "Edda",
        "point_of_view": "first",
        "reference_description": "grey braid, oilskin coat",
    }
    fields.update(overrides)
    return RequestSnapshot(**fields)


def test_fingerprint_joins_logical_fields():
    assert compute_fingerprint("c", "n", "third", "") == "c::n::third::"
    assert compute_fingerprint(None, None, None, None) == "::::::"


@pytest.mark.asyncio
async def test_same_fingerprint_overwrites_in_place(request_dal):
    library = RequestLibrary(request_dal)
    first = await library.save(snapshot(reference_image="data:image/png;base64,AAAA"))
    stored = await library.get(first.key)
    second = await library.save(snapshot(reference_image="data:image/png;base64,BBBB"))

    assert first.saved and second.saved
    assert second.key == first.key
    rows = await library.list()
    assert len(rows) == 1
    assert rows[0].reference_image == "data:image/png;base64,BBBB"
    assert rows[0].created_at == stored.created_at
    assert rows[0].updated_at >= stored.updated_at


@pytest.mark.asyncio
async def test_different_fingerprint_creates_new_record(request_dal):
    library = RequestLibrary(request_dal)
    first = await library.save(snapshot())
    second = await library.save(snapshot(point_of_view="third"))

    assert second.key != first.key
    listed = await library.list()
    assert [s.id for s in listed] == [second.key, first.key]


@pytest.mark.asyncio
async def test_oversized_reference_image_is_omitted_and_reported(request_dal):
    library = RequestLibrary(request_dal, max_embedded_chars=100)
    outcome = await library.save(snapshot(reference_image="data:image/png;base64," + "A" * 200))

    assert outcome.saved
    assert not outcome.compact
    assert outcome.omitted_fields == [REFERENCE_IMAGE_FIELD]
    assert outcome.warnings == [
        "Prompt saved. Omitted large reference-image snapshot for storage safety."
    ]
    stored = await library.get(outcome.key)
    assert stored.reference_image == ""
    assert stored.reference_description == "grey braid, oilskin coat"


@pytest.mark.asyncio
async def test_oversized_knowledge_base_is_omitted(request_dal):
    library = RequestLibrary(request_dal, max_embedded_chars=100)
    knowledge_base = {"entries": {"0": {"key": ["harbor"], "content": "x" * 500}}}
    outcome = await library.save(snapshot(knowledge_base=knowledge_base, reference_image="data:,small"))

    assert outcome.omitted_fields == [KNOWLEDGE_BASE_FIELD]
    stored = await library.get(outcome.key)
    assert stored.knowledge_base is None
    assert stored.reference_image == "data:,small"


@pytest.mark.asyncio
async def test_knowledge_base_round_trips_as_json(request_dal):
    library = RequestLibrary(request_dal)
    knowledge_base = {"entries": [{"keys": ["forge"], "content": "The forge never cools."}]}
    outcome = await library.save(snapshot(knowledge_base=knowledge_base))

    stored = await library.get(outcome.key)
    assert stored.knowledge_base == knowledge_base
    assert stored.to_dict()["auxiliaryKnowledgeBase"] == knowledge_base


@pytest.mark.asyncio
async def test_rejected_full_write_retries_in_compact_mode(db_initializer):
    library = RequestLibrary(RequestSnapshotDAL(db_initializer, max_record_bytes=500))
    outcome = await library.save(snapshot(reference_image="data:image/png;base64," + "B" * 600))

    assert outcome.saved
    assert outcome.compact
    assert outcome.omitted_fields == [REFERENCE_IMAGE_FIELD]
    assert outcome.warnings == ["Prompt saved in compact mode (large context omitted)."]
    stored = await library.get(outcome.key)
    assert stored.reference_image == ""
    assert stored.concept.startswith("A retired lighthouse keeper")


@pytest.mark.asyncio
async def test_both_attempts_failing_reports_failure(db_initializer):
    library = RequestLibrary(RequestSnapshotDAL(db_initializer, max_record_bytes=10))
    outcome = await library.save(snapshot())

    assert not outcome.saved
    assert outcome.key is None
    assert outcome.warnings == ["Failed to save prompt. Check storage permissions."]
    assert await library.list() == []


@pytest.mark.asyncio
async def test_size_cap_rejects_before_any_write(db_initializer):
    dal = RequestSnapshotDAL(db_initializer, max_record_bytes=10)
    with pytest.raises(StorageError):
        await dal.put(snapshot())
    assert await dal.list() == []


@pytest.mark.asyncio
async def test_delete_reports_whether_a_row_was_removed(request_dal):
    library = RequestLibrary(request_dal)
    outcome = await library.save(snapshot())

    assert await library.delete(outcome.key) is True
    assert await library.delete(outcome.key) is False
    assert await library.get(outcome.key) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("key", [0, -3, True, None, "1"])
async def test_invalid_keys_address_nothing(request_dal, key):
    assert await request_dal.get(key) is None
    assert await request_dal.delete(key) is False


@pytest.mark.asyncio
async def test_result_records_keep_illustration_bytes(result_dal):
    result = ResultRecord(
        subject_name="Rhea",
        record=StructuredRecord(name="Rhea", description="A smith.", first_message="Hi."),
        illustration=b"\x89PNG\r\n",
        illustration_type="image/png",
    )
    key = await result_dal.put(result)

    stored = await result_dal.get(key)
    assert stored.illustration == b"\x89PNG\r\n"
    assert stored.illustration_thumbnail is None
    assert stored.record == result.record
    assert stored.to_dict()["hasIllustration"] is True


@pytest.mark.asyncio
async def test_results_list_newest_first_and_updates_keep_created_at(result_dal):
    older = ResultRecord(subject_name="Old", record=StructuredRecord(name="Old"))
    newer = ResultRecord(subject_name="New", record=StructuredRecord(name="New"))
    await result_dal.put(older)
    await result_dal.put(newer)
    assert [r.subject_name for r in await result_dal.list()] == ["New", "Old"]

    created_at = older.created_at
    older.record.personality = "## Personality\nChanged."
    await result_dal.put(older)

    listed = await result_dal.list()
    assert [r.subject_name for r in listed] == ["Old", "New"]
    assert listed[0].created_at == created_at
    assert listed[0].record.personality == "## Personality\nChanged."


@pytest.mark.asyncio
async def test_put_with_unknown_key_inserts_under_that_key(result_dal):
    result = ResultRecord(subject_name="Pinned", id=42)
    assert await result_dal.put(result) == 42
    assert (await result_dal.get(42)).subject_name == "Pinned"


def test_card_export_and_import():
    record = StructuredRecord(name="Rhea", description="Smith", personality="Stoic", scenario="Forge")
    card = record.to_card()

    assert card["spec"] == "chara_card_v2"
    assert card["data"]["first_mes"] == "Hello!"
    imported = StructuredRecord.from_card(card)
    assert imported.name == "Rhea"
    assert imported.first_message == "Hello!"


def test_flat_card_import_falls_back_to_unnamed():
    imported = StructuredRecord.from_card({"description": "Nameless", "firstMessage": "Hey."})
    assert imported.name == "Unnamed Character"
    assert imported.first_message == "Hey."


@pytest.mark.asyncio
async def test_blank_point_of_view_shares_the_first_person_fingerprint(request_dal):
    library = RequestLibrary(request_dal)
    blank = await library.save(snapshot(point_of_view=""))
    explicit = await library.save(snapshot(point_of_view="first"))

    assert explicit.key == blank.key
    rows = await library.list()
    assert len(rows) == 1
    assert rows[0].point_of_view == "first"
    assert rows[0].fingerprint == compute_fingerprint(
        "A retired lighthouse keeper who collects shipwreck stories", "Edda", "first", "grey braid, oilskin coat"
    )


class FailAfterWriteResultDAL(ResultRecordDAL):
    """Fails inside the transaction, after the row has been written."""

    async def _write(self, conn, record, key):
        await super()._write(conn, record, key)
        raise ValueError("simulated failure after write")


class FailAfterWriteRequestDAL(RequestSnapshotDAL):
    async def _write(self, conn, record, key):
        await super()._write(conn, record, key)
        raise ValueError("simulated failure after write")


@pytest.mark.asyncio
async def test_failed_result_write_leaves_prior_row_unchanged(db_initializer, result_dal):
    key = await result_dal.put(ResultRecord(subject_name="Rhea", record=StructuredRecord(name="Rhea", scenario="Forge")))
    before = await result_dal.get(key)

    failing = FailAfterWriteResultDAL(db_initializer)
    changed = ResultRecord(id=key, subject_name="Changed", record=StructuredRecord(name="Changed"))
    with pytest.raises(StorageError):
        await failing.put(changed)
    with pytest.raises(StorageError):
        await failing.put(ResultRecord(subject_name="Extra"))

    after = await result_dal.get(key)
    assert after.subject_name == "Rhea"
    assert after.record == before.record
    assert after.updated_at == before.updated_at
    assert [r.id for r in await result_dal.list()] == [key]


@pytest.mark.asyncio
async def test_failed_upsert_leaves_prior_snapshot_unchanged(db_initializer, request_dal):
    library = RequestLibrary(request_dal)
    saved = await library.save(snapshot(reference_image="data:,original"))
    before = await library.get(saved.key)

    failing = FailAfterWriteRequestDAL(db_initializer)
    with pytest.raises(StorageError):
        await failing.upsert_by_fingerprint(snapshot(reference_image="data:,replacement"))

    after = await library.get(saved.key)
    assert after.reference_image == "data:,original"
    assert after.updated_at == before.updated_at
    assert len(await library.list()) == 1
