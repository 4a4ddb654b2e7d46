import uuid
from dataclasses import dataclass, field


@dataclass
class SyncJobCache:
    """Lookups memoized for the lifetime of one sync job.

    Built empty at job start and dropped when the job ends, so a long-lived worker
    never serves account or category ids from a previous run.
    """

    # provider_account_id -> internal account id
    accounts: dict[str, uuid.UUID] = field(default_factory=dict)
    # (name_key, kind) -> category id
    categories: dict[tuple[str, str], uuid.UUID] = field(default_factory=dict)
    # internal account id -> account type
    account_types: dict[uuid.UUID, str] = field(default_factory=dict)
