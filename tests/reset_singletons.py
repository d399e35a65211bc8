"""
Centralized singleton reset utilities for testing.

These functions reset global singleton instances to prevent test pollution.
Singletons that persist across tests can cause:
- Stores pointing at a previous test's temporary database
- Change listeners from one timeline leaking into the next test
- Settings changes (data path, secret key) not taking effect

Usage in conftest.py:
    @pytest.fixture(autouse=True)
    def reset_singletons_after_test():
        yield
        reset_sync_singletons()
"""


def reset_sync_singletons() -> None:
    """
    Reset every store and service singleton.

    Cheap (no I/O), safe to call before and after every test.
    """
    from api.services.timeline_store import reset_timeline_store
    from api.services.secret_box import reset_secret_box
    from api.services.connection_store import reset_connection_store
    from api.services.pairing import reset_pairing_code_store
    from api.services.outbox import reset_outbox_store
    from api.services.sync_cursors import reset_cursor_store
    from api.services.person_links import reset_person_link_store
    from api.services.conflicts import reset_conflict_store
    from api.services.sync_intents import reset_intent_store
    from api.services.person_candidates import reset_candidate_store
    from api.services.merge_engine import reset_merge_engine
    from api.services.sync_client import reset_sync_client
    from api.services.sync_service import reset_sync_service

    reset_timeline_store()
    reset_secret_box()
    reset_connection_store()
    reset_pairing_code_store()
    reset_outbox_store()
    reset_cursor_store()
    reset_person_link_store()
    reset_conflict_store()
    reset_intent_store()
    reset_candidate_store()
    reset_merge_engine()
    reset_sync_client()
    reset_sync_service()
