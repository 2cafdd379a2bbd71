from typing import Optional


class RepohostError(Exception):
    """
    Base error for supervisor failures, carrying the revision involved when known.
    """
    def __init__(self, message: str, revision: Optional[str] = None):
        self.message = message
        self.revision = revision
        ctx = f" (revision {revision})" if revision else ""
        super().__init__(f"{message}{ctx}")


class ConfigInvalid(RepohostError):
    """Startup configuration could not be loaded or validated."""


class FetchUnreachable(RepohostError):
    """The remote head revision could not be resolved."""


class MaterializeFailed(RepohostError):
    """A revision could not be checked out into a release directory."""


class CloneFailed(MaterializeFailed):
    pass


class CheckoutFailed(MaterializeFailed):
    pass


class InstallFailed(RepohostError):
    """The dependency install step exited unsuccessfully."""


class VerificationFailed(InstallFailed):
    """The install step reported success but left no dependency artifact behind."""


class BuildFailed(RepohostError):
    """
    A deploy attempt failed before the running release was touched.
    The underlying materialize or install error is kept on `cause`.
    """
    def __init__(self, message: str, revision: Optional[str] = None, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message, revision=revision)


class DeployCancelled(RepohostError):
    """Shutdown was requested after the build finished but before the swap."""


class InitialDeployFailed(RepohostError):
    """No release could be deployed at startup, so there is nothing to serve."""
