from __future__ import annotations

from collections.abc import Generator

import pytest

from leadboard import audit, events
from leadboard.core.events import InProcessEventBus


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


def test_audit_trail_keeps_only_recent_entries() -> None:
    for index in range(audit.AUDIT_TRAIL_LIMIT + 5):
        audit.record(
            actor_user_id="master-1",
            entity_type="crm.lead",
            entity_id=f"lead-{index}",
            action="create",
            before=None,
            after={"index": index},
        )

    assert len(audit.audit_entries) == audit.AUDIT_TRAIL_LIMIT
    assert audit.audit_entries[0]["entity_id"] == "lead-5"
    assert audit.entries_for("crm.lead", "lead-0") == []
    assert audit.entries_for("crm.lead", f"lead-{audit.AUDIT_TRAIL_LIMIT + 4}")[0]["after"] == {
        "index": audit.AUDIT_TRAIL_LIMIT + 4
    }


def test_published_events_keep_only_recent_envelopes() -> None:
    bus = InProcessEventBus()
    for index in range(events.PUBLISHED_EVENTS_LIMIT + 2):
        events.publish(events.build_envelope("crm.test", "master-1", "master-1", {"index": index}), bus)

    assert len(events.published_events) == events.PUBLISHED_EVENTS_LIMIT
    assert events.published_events[0]["payload"] == {"index": 2}
