"""
Error taxonomy for the ledger.

Per-item failures (malformed records, integrity violations) are collected into
run results. Only configuration errors and storage failures abort a run.
"""


class LedgerError(Exception):
    """Base class for ledger errors"""


class ConfigError(LedgerError):
    """Invalid or missing configuration. Fatal to a run."""


class UpstreamError(LedgerError):
    """Network, timeout or HTTP failure talking to the venue"""


class MalformedTradeError(LedgerError):
    """Fetched trade record is missing required fields"""


class IntegrityViolation(LedgerError):
    """Applying a trade would corrupt position state"""


class SyncLockTimeout(LedgerError):
    """Advisory lock was not acquired within the bounded wait"""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Lock {key!r} not acquired within {timeout:.1f}s")
        self.key = key
        self.timeout = timeout


class SyncInProgress(LedgerError):
    """The same sync job is already running in this process"""
