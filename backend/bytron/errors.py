class BytronError(Exception):
    """Base class for order and payment errors."""


class InvalidProduct(BytronError):
    pass


class OrderNotFound(BytronError):
    pass


class OracleUnavailable(BytronError):
    pass


class MintFailure(BytronError):
    pass


class UpstreamUnavailable(BytronError):
    pass


class PaymentCheckFailed(UpstreamUnavailable):
    pass


class DownloadDenied(BytronError):
    reason = "denied"


class NotPaid(DownloadDenied):
    reason = "Payment not verified"


class LinkExpired(DownloadDenied):
    reason = "Link expired"


class ForwardFailure(BytronError):
    pass


class ArtifactMissing(BytronError):
    pass
