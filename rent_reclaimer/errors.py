"""Error taxonomy for reclamation sessions.

Recoverable kinds are absorbed by the orchestrator. Only subclasses of
:class:`SessionFatalError` ever reach the caller of a session.
"""

from __future__ import annotations

import re


class ReclaimError(RuntimeError):
    """Base class for every error raised by the packer."""


class SizeExceeded(ReclaimError):
    """The assembled transaction would not fit the wire-size ceiling."""

    def __init__(self, message: str, *, recommended_size: int | None = None) -> None:
        super().__init__(message)
        self.recommended_size = recommended_size


class RouteNotFound(ReclaimError):
    """The quote service has no route for the token."""


class InsufficientLiquidity(ReclaimError):
    """A route exists but its output is negligible or its price impact extreme."""


class QuoteUnavailable(ReclaimError):
    """The quote request failed for a reason other than a missing route."""


class ConversionInstructionInvalid(ReclaimError):
    """Conversion instructions could not be fetched or were malformed."""


class ComputeBudgetExceeded(ReclaimError):
    """The transaction ran out of compute units."""


class SubmissionRejected(ReclaimError):
    """The network (or preflight) rejected the transaction definitively."""


class ConfirmationTimeout(ReclaimError):
    """Confirmation did not arrive in time and the status stayed unknown."""


class BlockHeightExceeded(ConfirmationTimeout):
    """The blockhash expired before confirmation; the transaction may still have landed."""


class RpcError(ReclaimError):
    """A JSON-RPC call failed after retries or returned an error object."""


class DiscoveryTimeout(ReclaimError):
    """Candidate discovery did not finish within the caller's deadline."""


class SessionFatalError(ReclaimError):
    """Nothing can proceed in this session; surfaced to the caller as-is."""


class SignerRejected(SessionFatalError):
    """The wallet refused to sign."""


class SignerUnavailable(SessionFatalError):
    """No wallet or signer is connected."""


class ConfigurationError(RuntimeError):
    """Raised when configuration values are invalid."""


class MissingConfigurationError(ConfigurationError):
    """Raised when required configuration values are absent or blank."""


# ---------------- Message classification ----------------
_RECOMMENDED_SIZE_RE = re.compile(r"Recommended batch size: (\d+)")

# Program logs always carry "consumed N of M compute units"; only match real exhaustion.
_COMPUTE_MARKERS = (
    "exceeded cus meter",
    "computationalbudgetexceeded",
    "compute budget exceeded",
    "exceeded maximum compute",
)
_SIZE_MARKERS = ("too large", "size limit", "exceeds", "overrun", "encoding overruns")
_SIGNER_MARKERS = ("user rejected", "rejected the request", "rejected by the wallet", "declined")


def recommended_size_from(message: str) -> int | None:
    match = _RECOMMENDED_SIZE_RE.search(message)
    if match:
        return int(match.group(1))
    return None


def classify_failure(message: str) -> ReclaimError:
    """Map a free-text RPC or wallet failure onto the taxonomy."""
    lowered = message.lower()
    if any(marker in lowered for marker in _COMPUTE_MARKERS):
        return ComputeBudgetExceeded(message)
    if any(marker in lowered for marker in _SIZE_MARKERS):
        return SizeExceeded(message, recommended_size=recommended_size_from(message))
    if any(marker in lowered for marker in _SIGNER_MARKERS):
        return SignerRejected(message)
    return SubmissionRejected(message)
