class SettlementEngineError(Exception):
    pass


class InvalidPeriod(SettlementEngineError, ValueError):
    pass


class InvalidState(SettlementEngineError):
    pass


class ProviderError(SettlementEngineError):
    def __init__(self, message: str, *, retryable: bool = True, payout_id=None):
        super().__init__(message)
        self.retryable = retryable
        self.payout_id = payout_id


class ProviderTimeout(ProviderError):
    """Outcome unknown: the provider may or may not have executed the transfer."""


class ConcurrencyConflict(SettlementEngineError):
    pass


class DataInconsistency(SettlementEngineError):
    pass


class AccessRestricted(SettlementEngineError, PermissionError):
    def __init__(self, message: str, *, access_state=None):
        super().__init__(message)
        self.access_state = access_state
