"""
Custom exception hierarchy for ledgerscan.

Each exception maps to a specific CLI exit code and JSON error_code field.
cli.py catches all LedgerscanError subclasses and formats them as JSON output.

Exit code mapping:
  0 — PartialDataWarning (informational, collected rather than raised)
  1 — LedgerscanError (generic error)
  2 — APIError (explorer-reported failure, rate limit)
  3 — NetworkError (timeout, connection refused)
  4 — DataError (invalid address, unsupported chain)
  5 — ConfigurationError (missing/invalid credential, malformed config)
"""


class LedgerscanError(Exception):
    """Base exception for all ledgerscan errors."""

    exit_code: int = 1
    error_code: str = "unknown_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class APIError(LedgerscanError):
    """Upstream explorer or RPC node reported a failure."""

    exit_code = 2
    error_code = "api_error"


class RemoteError(APIError):
    """Explorer returned a logical failure that is neither throttling nor a key problem."""

    error_code = "remote_error"


class RateLimitedError(APIError):
    """Explorer kept signalling throttling after every retry."""

    error_code = "rate_limited"

    def __init__(self, message: str, attempts: int = 0, **kwargs) -> None:
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts


class NetworkError(LedgerscanError):
    """Network connectivity issue: timeout, refused connection or dropped transport."""

    exit_code = 3
    error_code = "network_error"


class NetworkTimeoutError(NetworkError):
    """Request timed out."""

    error_code = "network_timeout"


class ConnectionFailedError(NetworkError):
    """Could not connect to API endpoint."""

    error_code = "connection_failed"


class DataError(LedgerscanError):
    """Caller supplied data the engine cannot work with."""

    exit_code = 4
    error_code = "data_error"


class InvalidAddressError(DataError):
    """Address format is invalid for the given chain."""

    error_code = "invalid_address"


class UnsupportedChainError(DataError):
    """Blockchain name is not one of the modelled chains."""

    error_code = "unsupported_chain"


class ConfigurationError(LedgerscanError):
    """No usable credential for the chain, or configuration is malformed."""

    exit_code = 5
    error_code = "config_error"


class ConfigInvalidError(ConfigurationError):
    """Config file exists but contains invalid TOML or invalid values."""

    error_code = "config_invalid"


class PartialDataWarning(LedgerscanError):
    """
    A record was kept with incomplete data (e.g. its gas fee could not be
    reconciled). Never raised; collected on the history report.
    """

    exit_code = 0
    error_code = "partial_data"
