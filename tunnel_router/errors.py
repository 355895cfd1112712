from typing import List, Optional, Tuple


class TunnelError(Exception):
    pass


# ──────────────────────────────────────────────────────────────
# Provisioning: fatal, no retry within a run
# ──────────────────────────────────────────────────────────────
class ProvisionError(TunnelError):
    pass


class DownloadFailed(ProvisionError):
    pass


class ExtractFailed(ProvisionError):
    pass


class CertificateFailed(ProvisionError):
    pass


class NoUsableArtifact(ProvisionError):
    def __init__(self, attempts: Optional[List[Tuple[str, str]]] = None):
        self.attempts = list(attempts or [])
        if self.attempts:
            detail = "; ".join(f"{url}: {reason}" for url, reason in self.attempts)
        else:
            detail = "no candidates for this platform"
        super().__init__(f"no usable backend artifact ({detail})")


# ──────────────────────────────────────────────────────────────
# Supervision: recovered locally via backoff restart
# ──────────────────────────────────────────────────────────────
class SupervisionError(TunnelError):
    def __init__(self, message: str, event=None):
        super().__init__(message)
        # ExitEvent describing the child exit, when there is one
        self.event = event


class SpawnFailed(SupervisionError):
    pass


class UnexpectedExit(SupervisionError):
    pass


# ──────────────────────────────────────────────────────────────
# Routing: recovered per connection
# ──────────────────────────────────────────────────────────────
class RouteError(TunnelError):
    pass


class NoMatch(RouteError):
    pass


class BackendUnreachable(RouteError):
    pass
