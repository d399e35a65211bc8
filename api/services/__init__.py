"""
Kinsync Services Package.

This package contains the sync business logic and its SQLite stores.
Use this module to import commonly-used services.

Example:
    from api.services import (
        get_timeline_store,
        get_connection_store,
        get_sync_service,
    )

Key service modules:
- timeline_store: people, moments and participants (change notices)
- pairing / connection_store / signing: establishing and authenticating peers
- outbox / sync_cursors / sync_service / sync_client: replication transport
- sync_apply / conflicts: applying inbound events and resolving conflicts
- person_links / person_mapping / person_candidates: identity mapping
- merge_engine: local person merge and undo
"""

# ============================================================================
# Timeline
# ============================================================================

from api.services.timeline_store import (
    Person,
    Moment,
    get_timeline_store,
)

# ============================================================================
# Pairing & Connections
# ============================================================================

from api.services.connection_store import (
    Connection,
    get_connection_store,
)

from api.services.pairing import (
    PairingService,
    get_pairing_code_store,
)

# ============================================================================
# Replication
# ============================================================================

from api.services.outbox import (
    OutboxEvent,
    get_outbox_store,
    install_outbox_recorder,
)

from api.services.sync_cursors import get_cursor_store

from api.services.conflicts import (
    Conflict,
    ConflictResolver,
    get_conflict_store,
)

from api.services.sync_service import (
    SyncService,
    get_sync_service,
)

# ============================================================================
# People Identity
# ============================================================================

from api.services.person_links import (
    PersonLink,
    get_person_link_store,
    LINK_STATUS_LINKED,
    LINK_STATUS_EXCLUDED,
)

from api.services.person_mapping import (
    MappingActivator,
    StagedMapping,
    suggest_mapping,
)

from api.services.person_candidates import (
    CandidateService,
    get_candidate_store,
)

from api.services.merge_engine import (
    MergeLog,
    get_merge_engine,
)

# ============================================================================
# Shared Utilities (re-exported from api.utils)
# ============================================================================

from api.utils import make_aware, get_sync_db_path


__all__ = [
    # Timeline
    "Person",
    "Moment",
    "get_timeline_store",
    # Pairing & connections
    "Connection",
    "get_connection_store",
    "PairingService",
    "get_pairing_code_store",
    # Replication
    "OutboxEvent",
    "get_outbox_store",
    "install_outbox_recorder",
    "get_cursor_store",
    "Conflict",
    "ConflictResolver",
    "get_conflict_store",
    "SyncService",
    "get_sync_service",
    # People identity
    "PersonLink",
    "get_person_link_store",
    "LINK_STATUS_LINKED",
    "LINK_STATUS_EXCLUDED",
    "MappingActivator",
    "StagedMapping",
    "suggest_mapping",
    "CandidateService",
    "get_candidate_store",
    "MergeLog",
    "get_merge_engine",
    # Shared utilities
    "make_aware",
    "get_sync_db_path",
]
