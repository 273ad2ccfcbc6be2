"""
Concurrent access to the marketplace.

Operations on one item are serialized; operations on different items may
interleave. Either way no wei is created or destroyed.
"""

import threading

import pytest

from nftmarket.core.clock import ManualClock
from nftmarket.core.config import MarketConfig
from nftmarket.core.errors import BidTooLow, ItemAlreadySold, MarketError
from nftmarket.core.marketplace import Marketplace
from nftmarket.core.notify import CollectingNotifier, EventType


ETH = 10**18
FEE = 10**16
SELLER = "0x" + "11" * 20
NFT = "0x" + "cc" * 20

BIDDERS = ["0x" + f"{n:02x}" * 20 for n in range(0x20, 0x30)]


@pytest.fixture
def market():
    m = Marketplace(config=MarketConfig(), clock=ManualClock(), notifier=CollectingNotifier())
    m.deposit(SELLER, 10 * ETH)
    for bidder in BIDDERS:
        m.deposit(bidder, 100 * ETH)
    return m


def run_all(targets):
    """Start every callable at once and wait for all of them."""
    barrier = threading.Barrier(len(targets))
    results = [None] * len(targets)

    def worker(i, fn):
        barrier.wait()
        try:
            results[i] = fn()
        except MarketError as e:
            results[i] = e

    threads = [threading.Thread(target=worker, args=(i, fn)) for i, fn in enumerate(targets)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


class TestConcurrentBids:
    """Racing bidders on one auction."""

    def test_highest_bid_wins(self, market):
        item_id = market.create_auction(SELLER, NFT, 1, ETH, FEE).item_id
        amounts = [ETH + i * ETH // 10 for i in range(len(BIDDERS))]

        results = run_all([
            (lambda b=b, a=a: market.place_bid(item_id, b, a))
            for b, a in zip(BIDDERS, amounts)
        ])

        for result in results:
            assert not isinstance(result, MarketError) or isinstance(result, BidTooLow)

        highest = market.highest_bid(item_id)
        assert highest.amount == max(amounts)
        assert highest.bidder == BIDDERS[-1]
        assert market.funds.escrowed_total() == FEE + max(amounts)
        for bidder in BIDDERS[:-1]:
            assert market.balance_of(bidder) == 100 * ETH
        assert market.is_conserved()

    def test_accepted_bids_strictly_increase(self, market):
        item_id = market.create_auction(SELLER, NFT, 1, ETH, FEE).item_id

        run_all([
            (lambda b=b: market.place_bid(item_id, b, 2 * ETH))
            for b in BIDDERS
        ])

        history = market.bid_history(item_id)
        assert len(history) == 1
        assert len(market.notifier.of_type(EventType.BID_PLACED)) == 1


class TestConcurrentPurchases:
    """Racing buyers on one listing."""

    def test_single_winner(self, market):
        item_id = market.create_listing(SELLER, NFT, 1, ETH, FEE).item_id

        results = run_all([
            (lambda b=b: market.close_listing(item_id, b, ETH))
            for b in BIDDERS
        ])

        winners = [r for r in results if not isinstance(r, MarketError)]
        losers = [r for r in results if isinstance(r, MarketError)]
        assert len(winners) == 1
        assert all(isinstance(e, ItemAlreadySold) for e in losers)

        buyer = winners[0].details["buyer"]
        assert market.fetch_market_item(item_id).owner == buyer
        assert market.pending_payout(SELLER) == ETH
        assert market.is_conserved()

    def test_independent_items(self, market):
        """Sales of different items proceed in parallel without interference."""
        ids = [market.create_listing(SELLER, NFT, n, ETH, FEE).item_id for n in range(len(BIDDERS))]

        results = run_all([
            (lambda i=i, b=b: market.close_listing(i, b, ETH))
            for i, b in zip(ids, BIDDERS)
        ])

        assert not any(isinstance(r, MarketError) for r in results)
        assert len({r.sequence for r in results}) == len(ids)
        assert market.pending_payout(SELLER) == len(ids) * ETH
        assert market.is_conserved()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
