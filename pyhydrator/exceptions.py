class HydratorError(Exception):
    """Base error raised by pyhydrator."""


class ConfigurationError(HydratorError):
    pass


class CredentialsNotConfigured(ConfigurationError):
    def __init__(self, timeout: float = None):
        msg = "credentials not configured"
        if timeout is not None:
            msg = f"{msg} (waited {timeout:g}s)"
        super().__init__(msg)
        self.timeout = timeout


class MissingCredentialError(ConfigurationError):
    def __init__(self, field: str):
        super().__init__(f"Missing {field} - credentials not properly set")
        self.field = field


class FetchError(HydratorError):
    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class AuthExpiredError(FetchError):
    pass


class AuthError(HydratorError):
    pass


class FetchCancelled(HydratorError):
    pass


class LockTimeout(HydratorError):
    pass
