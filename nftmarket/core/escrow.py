"""
Escrow - Fee and funds accounting for the marketplace.

Conceptual Background:
---------------------
Every committed wei in the system is in exactly one of three places:

1. **Balances**: funds an account can spend (deposited or refunded)
2. **Holds**: funds locked in escrow against an item (listing fee, bid, offer)
3. **Pending payouts**: sale proceeds and fees owed, withdrawn on request

Conservation:
    sum(balances) + sum(holds) + sum(pending) + in_transit == deposited - cashed_out

``in_transit`` covers credits staged by an open transaction and transfers
waiting on the hook.

Atomicity:
---------
Each primitive records its compensating action in the shared Journal. The
marketplace opens the journal together with the item lock, so a state
transition and its fund movements commit or roll back together.

Debits apply at once and their undo is an add-back. Credits are staged until
commit, so a rollback never takes back funds another thread already spent.

Outbound credits (refunds, payouts, cash-outs) consult a transfer hook first.
The hook stands in for the chain client: if it raises, the transfer fails
with ``RefundFailed`` / ``PayoutFailed`` and the enclosing operation aborts.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from nftmarket.core.errors import (
    InsufficientFunds,
    InvalidPrice,
    PayoutFailed,
    RefundFailed,
    FundsTransferError,
)
from nftmarket.core.journal import Journal
from nftmarket.utils.logger import get_logger

logger = get_logger("escrow")

TransferHook = Callable[[str, int, str], None]


class HoldReason(str, Enum):
    """Why funds are held in escrow."""
    LISTING_FEE = "listing_fee"
    BID = "bid"
    OFFER = "offer"
    PURCHASE = "purchase"


@dataclass
class EscrowHold:
    """
    Funds locked against an item.

    Attributes:
        hold_id: Unique hold identifier
        owner: Account the funds came from (and are refunded to)
        amount: Wei held
        reason: Listing fee, bid or offer
        item_id: Item the funds are held against
    """
    hold_id: int
    owner: str
    amount: int
    reason: HoldReason
    item_id: int

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reason"] = self.reason.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EscrowHold":
        return cls(
            hold_id=data["hold_id"],
            owner=data["owner"],
            amount=data["amount"],
            reason=HoldReason(data["reason"]),
            item_id=data["item_id"],
        )


class FundsLedger:
    """
    Balances, escrow holds, fees and pending payouts.

    Thread-safe: every primitive runs under an internal lock. The transfer
    hook is called outside the lock so a slow chain client only delays the
    item it is working for.

    Inside a transaction, credits to balances and pending payouts are staged
    per thread and applied when the journal commits. The transaction itself
    can spend its staged balance (a bidder raising their own bid); nobody
    else sees it until commit.
    """

    def __init__(
        self,
        fee_recipient: str,
        transfer_hook: Optional[TransferHook] = None,
        journal: Optional[Journal] = None,
    ):
        """
        Args:
            fee_recipient: Account credited with listing fees
            transfer_hook: Called as hook(recipient, amount, memo) before any
                outbound credit. Raising aborts the transfer.
            journal: Shared undo log (a private one is created if omitted)
        """
        self.fee_recipient = fee_recipient
        self.transfer_hook = transfer_hook
        self.journal = journal or Journal()

        self.balances: Dict[str, int] = defaultdict(int)
        self.holds: Dict[int, EscrowHold] = {}
        self.pending_payouts: Dict[str, int] = defaultdict(int)

        self.fees_collected: int = 0
        self.total_deposited: int = 0
        self.total_cashed_out: int = 0
        self.in_transit: int = 0  # Staged credits and transfers awaiting the hook

        self._next_hold_id = 1
        self._lock = threading.RLock()
        self._staged = threading.local()

    # =========================================================================
    # Transactions
    # =========================================================================

    def atomic(self):
        """Run a block of fund movements as one transaction."""
        return self.journal.atomic()

    def _record(self, undo: Callable[[], None]) -> None:
        def locked_undo():
            with self._lock:
                undo()

        self.journal.record(locked_undo)

    def _check_transfer(self, recipient: str, amount: int, memo: str, error_cls) -> None:
        if self.transfer_hook is None:
            return
        try:
            self.transfer_hook(recipient, amount, memo)
        except FundsTransferError:
            raise
        except Exception as e:
            raise error_cls(f"Transfer of {amount} to {recipient} failed: {e}") from e

    def _staged_credits(self) -> Dict[Tuple[str, str], int]:
        """Credits of the current thread's transaction. Call under the lock."""
        credits = getattr(self._staged, "credits", None)
        if credits is None:
            credits = {}
            self._staged.credits = credits
            self.journal.on_commit(self._apply_staged)
            self.journal.record(self._drop_staged)
        return credits

    def _apply_staged(self) -> None:
        with self._lock:
            credits = self._staged.credits or {}
            for (bucket, address), amount in credits.items():
                target = self.balances if bucket == "balance" else self.pending_payouts
                target[address] += amount
                self.in_transit -= amount
            self._staged.credits = None

    def _drop_staged(self) -> None:
        self._staged.credits = None

    def _staged_amount(self, bucket: str, address: str) -> int:
        credits = getattr(self._staged, "credits", None) or {}
        return credits.get((bucket, address), 0)

    def _credit(self, bucket: str, address: str, amount: int) -> None:
        """Credit a balance or pending payout. Call under the lock."""
        if not self.journal.active:
            target = self.balances if bucket == "balance" else self.pending_payouts
            target[address] += amount
            return

        credits = self._staged_credits()
        key = (bucket, address)
        credits[key] = credits.get(key, 0) + amount
        self.in_transit += amount

        def undo():
            credits[key] -= amount
            self.in_transit -= amount

        self._record(undo)

    # =========================================================================
    # Accounts
    # =========================================================================

    def deposit(self, address: str, amount: int) -> int:
        """Credit external funds to an account. Returns the new balance."""
        if amount <= 0:
            raise InvalidPrice(f"Deposit must be > 0, got {amount}")

        with self._lock:
            self._credit("balance", address, amount)
            self.total_deposited += amount

            def undo():
                self.total_deposited -= amount

            self._record(undo)
            logger.debug(f"Deposit: {address[:10]} +{amount}")
            return self._available(address)

    def cash_out(self, address: str, amount: int) -> int:
        """Move funds out of the system. Returns the new balance."""
        if amount <= 0:
            raise InvalidPrice(f"Cash-out must be > 0, got {amount}")

        with self._lock:
            available = self._available(address)
            if amount > available:
                raise InsufficientFunds(f"Insufficient balance: have {available}, want {amount}")
            restore = self._debit(address, amount)
            self.in_transit += amount

        try:
            self._check_transfer(address, amount, "cash_out", PayoutFailed)
        except FundsTransferError:
            with self._lock:
                restore()
                self.in_transit -= amount
            raise

        with self._lock:
            self.in_transit -= amount
            self.total_cashed_out += amount

            def undo():
                restore()
                self.total_cashed_out -= amount

            self._record(undo)
            return self._available(address)

    def _debit(self, address: str, amount: int) -> Callable[[], None]:
        """
        Take ``amount`` from an account, spending this transaction's staged
        credit first. Call under the lock. Returns the inverse.
        """
        credits = getattr(self._staged, "credits", None) or {}
        key = ("balance", address)
        from_staged = min(credits.get(key, 0), amount)
        from_balance = amount - from_staged
        if from_staged:
            credits[key] -= from_staged
            self.in_transit -= from_staged
        self.balances[address] -= from_balance

        def restore():
            self.balances[address] += from_balance
            if from_staged:
                credits[key] += from_staged
                self.in_transit += from_staged

        return restore

    def _available(self, address: str) -> int:
        return self.balances.get(address, 0) + self._staged_amount("balance", address)

    def balance_of(self, address: str) -> int:
        """Spendable balance, including credits staged by this thread's transaction."""
        with self._lock:
            return self._available(address)

    def pending_payout(self, address: str) -> int:
        with self._lock:
            return self.pending_payouts.get(address, 0) + self._staged_amount("payout", address)

    # =========================================================================
    # Escrow
    # =========================================================================

    def hold(self, owner: str, amount: int, reason: HoldReason, item_id: int) -> EscrowHold:
        """
        Lock funds from an account's balance against an item.

        Credits staged by the current transaction are spent first.

        Raises:
            InsufficientFunds: If the balance does not cover ``amount``
        """
        with self._lock:
            available = self._available(owner)
            if amount > available:
                raise InsufficientFunds(
                    f"Insufficient balance for {reason.value}: have {available}, need {amount}"
                )

            h = EscrowHold(
                hold_id=self._next_hold_id,
                owner=owner,
                amount=amount,
                reason=reason,
                item_id=item_id,
            )
            self._next_hold_id += 1

            restore = self._debit(owner, amount)
            self.holds[h.hold_id] = h

            def undo():
                del self.holds[h.hold_id]
                restore()

            self._record(undo)
            logger.debug(f"Hold #{h.hold_id}: {reason.value} {amount} from {owner[:10]} on item {item_id}")
            return h

    def _take_hold(self, hold_id: int) -> EscrowHold:
        h = self.holds.get(hold_id)
        if h is None:
            raise FundsTransferError(f"Escrow hold #{hold_id} not found")
        return h

    def refund(self, hold_id: int) -> EscrowHold:
        """
        Return held funds to their owner.

        Raises:
            RefundFailed: If the outbound transfer is rejected
        """
        with self._lock:
            h = self._take_hold(hold_id)
            del self.holds[hold_id]
            self.in_transit += h.amount

        try:
            self._check_transfer(h.owner, h.amount, f"refund:{h.reason.value}:{h.item_id}", RefundFailed)
        except FundsTransferError:
            with self._lock:
                self.holds[hold_id] = h
                self.in_transit -= h.amount
            raise

        with self._lock:
            self.in_transit -= h.amount
            self._record(lambda: self.holds.__setitem__(hold_id, h))
            self._credit("balance", h.owner, h.amount)
            logger.debug(f"Refund #{hold_id}: {h.amount} to {h.owner[:10]}")
            return h

    def settle(self, hold_id: int, payee: str) -> EscrowHold:
        """Release held funds to a payee's pending payout."""
        with self._lock:
            h = self._take_hold(hold_id)
            del self.holds[hold_id]
            self._record(lambda: self.holds.__setitem__(hold_id, h))
            self._credit("payout", payee, h.amount)
            logger.debug(f"Settle #{hold_id}: {h.amount} owed to {payee[:10]}")
            return h

    def collect_fee(self, hold_id: int) -> EscrowHold:
        """Release a held listing fee to the fee recipient."""
        with self._lock:
            h = self.settle(hold_id, self.fee_recipient)
            self.fees_collected += h.amount

            def undo():
                self.fees_collected -= h.amount

            self._record(undo)
            return h

    def withdraw_payout(self, address: str) -> int:
        """
        Move an account's pending payout into its balance.

        Returns:
            Amount withdrawn (0 if nothing was owed)

        Raises:
            PayoutFailed: If the outbound transfer is rejected
        """
        with self._lock:
            amount = self.pending_payouts.get(address, 0)
            if amount == 0:
                return 0
            self.pending_payouts[address] = 0
            self.in_transit += amount

        try:
            self._check_transfer(address, amount, "payout", PayoutFailed)
        except FundsTransferError:
            with self._lock:
                self.pending_payouts[address] += amount
                self.in_transit -= amount
            raise

        with self._lock:
            self.in_transit -= amount
            self._record(lambda: self.pending_payouts.__setitem__(address, self.pending_payouts[address] + amount))
            self._credit("balance", address, amount)
            logger.info(f"Payout: {amount} to {address[:10]}")
            return amount

    def get_hold(self, hold_id: int) -> Optional[EscrowHold]:
        with self._lock:
            return self.holds.get(hold_id)

    def holds_for_item(self, item_id: int) -> List[EscrowHold]:
        with self._lock:
            return [h for h in self.holds.values() if h.item_id == item_id]

    # =========================================================================
    # Invariants & Stats
    # =========================================================================

    def escrowed_total(self) -> int:
        with self._lock:
            return sum(h.amount for h in self.holds.values())

    def is_conserved(self) -> bool:
        """Check that no wei was created or destroyed."""
        with self._lock:
            held = sum(self.balances.values()) + self.escrowed_total() + sum(self.pending_payouts.values())
            held += self.in_transit
            return held == self.total_deposited - self.total_cashed_out

    def stats(self) -> dict:
        """Get accounting statistics."""
        with self._lock:
            return {
                "accounts": len([b for b in self.balances.values() if b]),
                "total_balances": sum(self.balances.values()),
                "escrowed": self.escrowed_total(),
                "open_holds": len(self.holds),
                "pending_payouts": sum(self.pending_payouts.values()),
                "fees_collected": self.fees_collected,
                "total_deposited": self.total_deposited,
                "total_cashed_out": self.total_cashed_out,
                "in_transit": self.in_transit,
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "balances": {a: b for a, b in self.balances.items() if b},
                "pending_payouts": {a: p for a, p in self.pending_payouts.items() if p},
                "holds": [h.to_dict() for h in self.holds.values()],
                "fees_collected": self.fees_collected,
                "total_deposited": self.total_deposited,
                "total_cashed_out": self.total_cashed_out,
                "next_hold_id": self._next_hold_id,
            }

    def load_dict(self, data: dict) -> None:
        """Replace state with a previously persisted snapshot."""
        with self._lock:
            self.balances = defaultdict(int, data.get("balances", {}))
            self.pending_payouts = defaultdict(int, data.get("pending_payouts", {}))
            self.holds = {}
            for raw in data.get("holds", []):
                h = EscrowHold.from_dict(raw)
                self.holds[h.hold_id] = h
            self.fees_collected = data.get("fees_collected", 0)
            self.total_deposited = data.get("total_deposited", 0)
            self.total_cashed_out = data.get("total_cashed_out", 0)
            self.in_transit = 0
            self._next_hold_id = max(
                data.get("next_hold_id", 1),
                max(self.holds, default=0) + 1,
            )

    def __repr__(self) -> str:
        return (
            f"FundsLedger(holds={len(self.holds)}, escrowed={self.escrowed_total()}, "
            f"fees={self.fees_collected})"
        )
