"""
Packed pool flag bits as a value object.

The pool contract packs status into one uint8. The mirror persists the raw
integer but components only ever see PoolFlags.
"""
from dataclasses import dataclass, replace

SETTLED = 1 << 0
CREATOR_SIDE_WON = 1 << 1
PRIVATE = 1 << 2
USES_BITR = 1 << 3
REFUNDED = 1 << 4


@dataclass(frozen=True)
class PoolFlags:
    settled: bool = False
    creator_side_won: bool = False
    private: bool = False
    uses_bitr: bool = False
    refunded: bool = False

    def __post_init__(self):
        if self.settled and self.refunded:
            raise ValueError("A pool cannot be both settled and refunded")

    @classmethod
    def from_int(cls, value: int) -> "PoolFlags":
        value = int(value or 0)
        refunded = bool(value & REFUNDED)
        # A chain-side refund may leave the settled bit set; refund wins
        return cls(
            settled=bool(value & SETTLED) and not refunded,
            creator_side_won=bool(value & CREATOR_SIDE_WON),
            private=bool(value & PRIVATE),
            uses_bitr=bool(value & USES_BITR),
            refunded=refunded,
        )

    def to_int(self) -> int:
        value = 0
        if self.settled:
            value |= SETTLED
        if self.creator_side_won:
            value |= CREATOR_SIDE_WON
        if self.private:
            value |= PRIVATE
        if self.uses_bitr:
            value |= USES_BITR
        if self.refunded:
            value |= REFUNDED
        return value

    def with_settled(self, creator_side_won: bool) -> "PoolFlags":
        """Mark settled. A refunded pool stays refunded (refund wins, settle is ignored)."""
        if self.refunded:
            return self
        return replace(self, settled=True, creator_side_won=creator_side_won)

    def with_refunded(self) -> "PoolFlags":
        """Mark refunded. Refunding a settled pool is ignored, which keeps settled and refunded exclusive."""
        if self.settled:
            return self
        return replace(self, refunded=True, creator_side_won=False)
