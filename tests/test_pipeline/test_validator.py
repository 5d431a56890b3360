"""
Tests for the validator

Verifies that every command yields exactly one Event or Rejection:
- Idempotency: redelivery returns the prior outcome, appends nothing
- Versions come from the event log, even when the read store lags
- Existence, tombstone and uniqueness rules
- Pluggable per-type rules
- Corrupt command entries are skipped with the offset advanced
"""

from typing import Any

import pytest

from eventfold.kernel.codec import encode
from eventfold.kernel.envelopes import CommandEnvelope, Event, Rejection, RejectionCode
from eventfold.kernel.errors import BusinessRuleViolation, SchemaNotFound
from eventfold.kernel.ids import derive_event_id
from eventfold.kernel.read_store import ReadStoreEntry, SQLiteReadStore
from eventfold.pipeline import Pipeline
from eventfold.schema.registry import SchemaRegistry
from eventfold.schema.rules import DefaultRules, RulesRegistry
from tests.helpers import make_command


def test_create_yields_versioned_event(pipeline: Pipeline) -> None:
    command = pipeline.submit("createEntry", {"title": "A"})

    outcome = pipeline.validator.validate(command)

    assert isinstance(outcome, Event)
    assert outcome.id == derive_event_id(command.id)
    assert outcome.type == "entryCreated"
    assert outcome.resource_id == command.id
    assert outcome.resource_type == "entries"
    assert outcome.version == 1
    assert outcome.caused_by == command.id
    assert outcome.occurred_at == command.meta.timestamp


def test_validate_is_idempotent(pipeline: Pipeline) -> None:
    """Test that validating a command twice appends one event"""
    command = pipeline.submit("createEntry", {"title": "A"})

    first = pipeline.validator.validate(command)
    second = pipeline.validator.validate(command)

    assert first == second
    assert pipeline.event_log.count() == 1


def test_rejection_is_idempotent(pipeline: Pipeline) -> None:
    command = pipeline.submit("updateEntry", {"title": "B"}, resource_id="missing")

    first = pipeline.validator.validate(command)
    second = pipeline.validator.validate(command)

    assert isinstance(first, Rejection)
    assert first == second
    assert pipeline.rejections.count() == 1
    assert pipeline.event_log.count() == 0


def test_update_of_unknown_id_is_not_found(pipeline: Pipeline) -> None:
    command = pipeline.submit("updateEntry", {"title": "B"}, resource_id="ghost")

    outcome = pipeline.validator.validate(command)

    assert isinstance(outcome, Rejection)
    assert outcome.code == RejectionCode.NOT_FOUND
    assert outcome.caused_by == command.id
    assert outcome.resource_id == "ghost"


def test_update_requires_resource_id(pipeline: Pipeline) -> None:
    outcome = pipeline.validator.validate(make_command("c1", "updateEntry", {"title": "B"}))

    assert outcome.code == RejectionCode.SCHEMA_INVALID
    assert "resourceId is required" in outcome.reason


def test_schema_violation_is_rejected(pipeline: Pipeline) -> None:
    outcome = pipeline.validator.validate(make_command("c1", "createEntry", {"title": 1}))

    assert isinstance(outcome, Rejection)
    assert outcome.code == RejectionCode.SCHEMA_INVALID
    assert outcome.reason == 'Field "title" should be of type "string" but is of type "number"'


def test_unknown_command_type_is_rejected(pipeline: Pipeline) -> None:
    outcome = pipeline.validator.validate(make_command("c1", "createWidget", {}))

    assert outcome.code == RejectionCode.SCHEMA_INVALID


def test_create_with_taken_id_conflicts(pipeline: Pipeline) -> None:
    pipeline.submit("createEntry", {"title": "A"}, resource_id="e1")
    pipeline.submit("createEntry", {"title": "B"}, resource_id="e1")

    pipeline.process()

    rejections = pipeline.list_rejections()
    assert len(rejections) == 1
    assert rejections[0].code == RejectionCode.CONFLICT
    assert "already exists" in rejections[0].reason
    assert pipeline.get("entries", "e1").state == {"title": "A"}


def test_deleted_id_cannot_be_recreated(pipeline: Pipeline) -> None:
    pipeline.submit("createEntry", {"title": "A"}, resource_id="e1")
    pipeline.submit("deleteEntry", resource_id="e1")
    pipeline.submit("createEntry", {"title": "again"}, resource_id="e1")

    pipeline.process()

    [rejection] = pipeline.list_rejections()
    assert rejection.code == RejectionCode.CONFLICT
    assert "was deleted" in rejection.reason


def test_versions_follow_event_log_when_read_store_lags(pipeline: Pipeline) -> None:
    """Test that versions stay gap-free without running the materializer"""
    created = pipeline.submit("createEntry", {"title": "A"})
    pipeline.submit("updateEntry", {"count": 1}, resource_id=created.id)
    pipeline.submit("updateEntry", {"count": 2}, resource_id=created.id)
    pipeline.submit("deleteEntry", resource_id=created.id)

    pipeline.validator_workers.run_once()

    events = pipeline.materializer.rebuild(created.id)
    assert pipeline.read_store.find("entries", created.id) is None
    assert events[("entries", created.id)].version == 4
    assert events[("entries", created.id)].deleted


def test_unique_field_conflict(pipeline: Pipeline) -> None:
    pipeline.submit("createEntry", {"title": "A", "slug": "hello"})
    pipeline.process()

    duplicate = pipeline.submit("createEntry", {"title": "B", "slug": "hello"})
    pipeline.process()

    rejection = pipeline.rejections.find(duplicate.id)
    assert rejection.code == RejectionCode.CONFLICT
    assert "slug='hello'" in rejection.reason


def test_unique_fields_are_checked_against_materialized_entries(pipeline: Pipeline) -> None:
    """Creates validated before either is materialized do not see each other"""
    first = pipeline.submit("createEntry", {"title": "A", "slug": "hello"})
    second = pipeline.submit("createEntry", {"title": "B", "slug": "hello"})
    pipeline.process()

    assert pipeline.list_rejections() == []
    assert {e.resource_id for e in pipeline.read_store.find_by_field("entries", "slug", "hello")} == {
        first.id,
        second.id,
    }

    third = pipeline.submit("createEntry", {"title": "C", "slug": "hello"})
    pipeline.process()

    assert pipeline.rejections.find(third.id).code == RejectionCode.CONFLICT


def test_unique_value_is_released_by_delete(pipeline: Pipeline) -> None:
    first = pipeline.submit("createEntry", {"title": "A", "slug": "hello"})
    pipeline.process()
    pipeline.submit("deleteEntry", resource_id=first.id)
    pipeline.process()

    second = pipeline.submit("createEntry", {"title": "B", "slug": "hello"})
    pipeline.process()

    assert pipeline.rejections.find(second.id) is None
    assert pipeline.get("entries", second.id).state["slug"] == "hello"


def test_update_may_keep_its_own_unique_value(pipeline: Pipeline) -> None:
    created = pipeline.submit("createEntry", {"title": "A", "slug": "hello"})
    pipeline.process()

    pipeline.submit("updateEntry", {"slug": "hello", "title": "B"}, resource_id=created.id)
    pipeline.process()

    assert pipeline.list_rejections() == []
    assert pipeline.get("entries", created.id).state["title"] == "B"


def test_resource_ids_are_global_across_types(pipeline: Pipeline) -> None:
    pipeline.submit("createEntry", {"title": "A"}, resource_id="shared")
    pipeline.process()

    create_note = pipeline.submit("createNote", {"text": "x"}, resource_id="shared")
    update_note = pipeline.submit("updateNote", {"text": "y"}, resource_id="shared")
    pipeline.process()

    assert pipeline.rejections.find(create_note.id).code == RejectionCode.CONFLICT
    assert pipeline.rejections.find(update_note.id).code == RejectionCode.NOT_FOUND


class NoShoutingRules(DefaultRules):
    """Custom rules: titles must not be all caps"""

    def validate_create(
        self, command: CommandEnvelope, current: ReadStoreEntry, store: SQLiteReadStore
    ) -> None:
        super().validate_create(command, current, store)
        title = command.body.get("title", "")
        if title.isupper():
            raise BusinessRuleViolation(f"Title {title!r} is all caps")

    def reduce(self, state: dict[str, Any], event: Event) -> dict[str, Any]:
        new_state = super().reduce(state, event)
        new_state["revision"] = event.version
        return new_state


def test_custom_rules(settings, test_time) -> None:
    """Test that per-type rules plug into validation and reduction"""
    schemas = SchemaRegistry.from_settings(settings)
    pipeline = Pipeline(
        settings,
        rules={"entries": NoShoutingRules(schemas.content_type("entries"))},
        time_provider=test_time,
    )
    loud = pipeline.submit("createEntry", {"title": "HELLO"})
    quiet = pipeline.submit("createEntry", {"title": "hello"})

    pipeline.process()

    assert pipeline.rejections.find(loud.id).code == RejectionCode.BUSINESS_RULE_VIOLATION
    assert pipeline.get("entries", quiet.id).state == {"title": "hello", "revision": 1}


def test_rules_for_unknown_type(schemas: SchemaRegistry) -> None:
    with pytest.raises(SchemaNotFound):
        RulesRegistry(schemas, {"widgets": DefaultRules(schemas.content_type("notes"))})


def test_redelivery_after_crash_before_checkpoint(pipeline: Pipeline) -> None:
    """Test that an outcome recorded without its checkpoint is not duplicated"""
    command = pipeline.submit("createEntry", {"title": "A"})
    # Outcome durable, checkpoint never committed
    pipeline.validator.validate(command)

    commands, _ = pipeline.process()

    assert commands == 1
    assert pipeline.event_log.count() == 1
    assert pipeline.get("entries", command.id).version == 1


def test_restarted_validator_resumes_from_checkpoint(pipeline: Pipeline, settings) -> None:
    first = pipeline.submit("createEntry", {"title": "A"}, resource_id="e1")
    pipeline.process()

    restarted = Pipeline(settings)
    restarted.submit("updateEntry", {"title": "B"}, resource_id="e1")
    commands, events = restarted.process()

    assert (commands, events) == (1, 1)
    assert restarted.event_log.count() == 2
    assert restarted.get("entries", first.target_id).version == 2


def test_corrupt_command_is_skipped(pipeline: Pipeline) -> None:
    entry = pipeline.command_log.append("e1", "{definitely not json")
    good = pipeline.submit("createEntry", {"title": "A"}, resource_id="e1")

    pipeline.process()

    checkpoint = pipeline.read_store.load_checkpoint("commands", entry.partition)
    assert checkpoint.offset == entry.offset + 2
    assert pipeline.get("entries", good.target_id).version == 1
    assert pipeline.rejections.count() == 0


def test_corrupt_command_with_id_leaves_rejection(pipeline: Pipeline) -> None:
    pipeline.command_log.append("e1", '{"id": "cmd-broken", "type": "createEntry"}')

    pipeline.process()

    rejection = pipeline.rejections.find("cmd-broken")
    assert rejection.code == RejectionCode.SCHEMA_INVALID
    assert rejection.reason.startswith("Corrupt command envelope")


def test_prior_outcome_lookup(pipeline: Pipeline) -> None:
    command = pipeline.submit("createEntry", {"title": "A"})
    assert pipeline.validator.prior_outcome(command.id) is None

    event = pipeline.validator.validate(command)

    assert pipeline.validator.prior_outcome(command.id) == event


def test_event_log_is_keyed_by_resource(pipeline: Pipeline) -> None:
    command = pipeline.submit("createEntry", {"title": "A"}, resource_id="e1")
    event = pipeline.validator.validate(command)

    [entry] = pipeline.event_log.entries_for_key("e1")

    assert entry.value == encode(event)
    assert entry.partition == pipeline.command_log.partition_for("e1")
