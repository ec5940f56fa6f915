from .service import ConsumeResult, CreditLedger, next_utc_midnight

__all__ = [
    "ConsumeResult",
    "CreditLedger",
    "next_utc_midnight",
]
