"""Settlement contract boundary."""

from podium.chain.submitter import (
    SettlementSubmitter,
    Web3SettlementSubmitter,
    submit_with_retry,
)

__all__ = ["SettlementSubmitter", "Web3SettlementSubmitter", "submit_with_retry"]
