"""reqkit errors - import, digest and request preparation failures."""


class ReqkitError(Exception):
    """Base class for every error raised by reqkit."""

    summary = "reqkit error"

    def __init__(self, detail: str = ""):
        self.detail = detail
        message = f"{self.summary}\n\t{detail}" if detail else self.summary
        super().__init__(message)


class ConfigError(ReqkitError):
    summary = "Could not load config"


# ── cURL import ──────────────────────────────────────────────────────────


class CurlImportError(ReqkitError):
    summary = "Could not import cURL"


class CouldNotReadCurlFileError(CurlImportError):
    summary = "Could not read cURL file"


class CouldNotParseCurlError(CurlImportError):
    summary = "Could not parse cURL"


class CurlUrlError(CurlImportError):
    summary = "Could not parse URL"


class UnknownMethodError(CurlImportError):
    summary = "Unknown method"


# ── .http import ─────────────────────────────────────────────────────────


class HttpFileImportError(ReqkitError):
    summary = "Could not import .http file"


class CouldNotReadHttpFileError(HttpFileImportError):
    summary = "Could not read .http file"


class CouldNotParseMethodError(HttpFileImportError):
    summary = "Could not parse HTTP method"


class HttpFileUrlError(HttpFileImportError):
    summary = "Could not parse URL"


class NoRequestsFoundError(HttpFileImportError):
    summary = "No requests found in .http file"


# ── Digest ───────────────────────────────────────────────────────────────


class DigestError(ReqkitError):
    summary = "Invalid digest challenge"


class DigestHeaderSyntaxError(DigestError):
    summary = "Invalid header syntax"


class InvalidAlgorithmError(DigestError):
    summary = "Invalid algorithm"


class InvalidQopError(DigestError):
    summary = "Invalid qop"


class InvalidBooleanError(DigestError):
    summary = "Invalid boolean"

    def __init__(self, field: str, value: str):
        self.field = field
        super().__init__(f"{field}: {value}")


class InvalidCharsetError(DigestError):
    summary = "Invalid charset"


# ── Request preparation ──────────────────────────────────────────────────


class PrepareRequestError(ReqkitError):
    summary = "Could not prepare request"


class InvalidUrlError(PrepareRequestError):
    summary = "INVALID URL"


class CouldNotOpenFileError(PrepareRequestError):
    summary = "COULD NOT OPEN FILE"


class JwtSigningError(PrepareRequestError):
    summary = "Could not sign JWT"


class UnsupportedProtocolError(PrepareRequestError):
    summary = "Protocol cannot be sent by the HTTP executor"
