# Exceptions raised by the relay client. Estimation and transport problems are
# not raised; they come back as None / fallback values and are logged.


class AARelayError(Exception):
    """Base class for errors raised by aa_relay"""


class ConfigurationError(AARelayError):
    """A required setting is missing or malformed. Raised before any network call."""


class MalformedReceiptError(AARelayError):
    """The relay returned a receipt that doesn't have the expected shape"""

    def __init__(self, message, receipt=None):
        super().__init__(message)
        self.receipt = receipt
