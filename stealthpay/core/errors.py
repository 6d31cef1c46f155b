class StealthPayError(Exception):
    pass


class StealthError(StealthPayError):
    """Invalid key material or malformed ciphertext."""


class AuthenticityError(StealthError):
    """Ciphertext failed its tag check or decrypted to a key that does not match."""


class PayloadTooLargeError(StealthError):
    def __init__(self, field: str, size: int, limit: int):
        self.field = field
        self.size = size
        self.limit = limit
        super().__init__(f"{field} is {size} bytes, limit is {limit}")


class EventDecodeError(StealthPayError):
    pass


class ChainReaderError(StealthPayError):
    """Remote chain read failed; the caller should retry on a later cycle."""


class ReconciliationAnomaly(StealthPayError):
    """
    Chain and ledger disagree by more than the adjustment ceiling. Reported
    in the validation run and logged; never raised out of the worker.
    """

    def __init__(self, address: str, asset_id: str, difference):
        self.address = address
        self.asset_id = asset_id
        self.difference = difference
        super().__init__(f"{address} {asset_id}: chain differs from ledger by {difference}")
