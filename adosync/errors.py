"""Error taxonomy for the sync engine.

Connection- and credential-level errors abort a sync job. Remote errors raised
while reconciling a single item are recorded on the job and the run continues.
"""

from typing import Optional


class AdoSyncError(Exception):
    """Base class for all sync engine errors"""


class ConfigurationError(AdoSyncError):
    """Required configuration is missing or invalid"""


class ValidationError(AdoSyncError):
    """A request or stored value failed validation"""


class ConnectionNotFoundError(AdoSyncError):
    def __init__(self, connection_id):
        super().__init__(f"Connection not found: {connection_id}")
        self.connection_id = connection_id


class JobNotFoundError(AdoSyncError):
    def __init__(self, job_id):
        super().__init__(f"Sync job not found: {job_id}")
        self.job_id = job_id


class InvalidJobTransitionError(AdoSyncError):
    """A sync job was moved out of a terminal state or skipped a state"""


class CredentialError(AdoSyncError):
    """The stored credentials can't be used; the connection must be re-authorized"""


class DecryptionError(CredentialError):
    pass


class RefreshUnavailableError(CredentialError):
    pass


class _UpstreamCredentialError(CredentialError):
    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        detail = f"{message}: {status} {body}".rstrip() if status is not None else message
        super().__init__(detail)
        self.status = status
        self.body = body


class OAuthExchangeError(_UpstreamCredentialError):
    pass


class OAuthRefreshError(_UpstreamCredentialError):
    pass


class RemoteError(AdoSyncError):
    """Non-2xx response from the work item REST API"""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        detail = f"{message}: {status} {body}".rstrip() if status is not None else message
        super().__init__(detail)
        self.status = status
        self.body = body


class QueryError(RemoteError):
    pass


class FetchError(RemoteError):
    pass


class ConcurrencyConflictError(RemoteError):
    """The work item revision changed between fetch and patch (HTTP 412)"""
