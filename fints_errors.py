from typing import Optional


class FinTSBridgeError(Exception):
    def __init__(self, message: str, backend: Optional[str] = None):
        super().__init__(message)
        self.backend = backend


class ConfigurationError(FinTSBridgeError):
    pass


class BackendUnavailableError(FinTSBridgeError):
    pass


class BackendExecutionError(FinTSBridgeError):
    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message, backend=backend)
        self.exit_code = exit_code
        self.stderr = stderr


class ParseError(FinTSBridgeError):
    def __init__(self, message: str, output: str = "", backend: Optional[str] = None):
        super().__init__(message, backend=backend)
        self.output = output


class NotFoundError(FinTSBridgeError):
    pass
