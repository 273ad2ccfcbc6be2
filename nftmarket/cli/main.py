"""
NFT Market CLI - Command Line Interface for the marketplace core

Main entry point for all CLI commands. State lives in a SQLite store under
``--data-dir`` and is restored on every invocation.
"""

import functools
import json
import sys
import click
from pathlib import Path

from nftmarket.utils.logger import setup_logging, get_logger

logger = get_logger("cli")


def resolve_account(ctx, value: str) -> str:
    """
    Turn a wallet name or an address into an address.

    Args:
        ctx: Click context holding ``data_dir``
        value: ``0x...`` address or the name of a wallet created with
            ``nftmarket wallet create``
    """
    if value.startswith("0x"):
        return value.lower()

    wallet_path = ctx.obj["data_dir"] / "wallets" / f"{value}.json"
    if not wallet_path.exists():
        raise click.BadParameter(f"Unknown wallet '{value}' (create with: nftmarket wallet create --name {value})")
    return json.loads(wallet_path.read_text())["address"]


def ether(value: str) -> int:
    """Parse an ether amount (e.g. ``0.01``) into wei."""
    from nftmarket.utils.units import to_wei

    try:
        return to_wei(value)
    except ValueError as e:
        raise click.BadParameter(str(e))


def open_market(ctx):
    """Marketplace backed by the store in the data directory."""
    from nftmarket.core.marketplace import Marketplace
    from nftmarket.core.storage import StorageManager

    cfg = ctx.obj["config"]
    storage = StorageManager(cfg.data_dir, cfg.db_name)
    return Marketplace(config=cfg, storage=storage)


def market_command(f):
    """Open the marketplace, pass it in, and report market errors."""
    @functools.wraps(f)
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        from nftmarket.core.errors import MarketError

        market = open_market(ctx)
        try:
            return f(market, *args, **kwargs)
        except MarketError as e:
            click.echo(f"❌ {type(e).__name__}: {e}")
            sys.exit(1)
        finally:
            market.close()

    return wrapper


def echo_receipt(receipt) -> None:
    click.echo(f"   TX Hash: {receipt.tx_hash[:20]}...")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--data-dir", default="~/.nftmarket", help="Data directory")
@click.option("--env-file", default=None, help="Read NFTMARKET_* settings from this .env file")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, data_dir, env_file):
    """NFT Market - listings, auctions and offers with escrow"""
    import logging
    from nftmarket.core.config import load_config

    level = logging.DEBUG if debug else logging.WARNING
    setup_logging(level=level)

    cfg = load_config(env_file)
    cfg.data_dir = Path(data_dir).expanduser()

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg
    ctx.obj["data_dir"] = cfg.data_dir
    ctx.obj["data_dir"].mkdir(parents=True, exist_ok=True)


# =============================================================================
# Wallet Commands
# =============================================================================

@cli.group()
def wallet():
    """Wallet management commands"""
    pass


@wallet.command("create")
@click.option("--name", default="default", help="Wallet name")
@click.pass_context
def wallet_create(ctx, name):
    """Create a named account from a fresh secp256k1 key"""
    from nftmarket.crypto import generate_keypair, bytes_to_hex

    wallet_path = ctx.obj["data_dir"] / "wallets" / f"{name}.json"
    if wallet_path.exists():
        click.echo(f"❌ Wallet '{name}' already exists")
        sys.exit(1)

    kp = generate_keypair()
    wallet_path.parent.mkdir(parents=True, exist_ok=True)

    wallet_data = {
        "name": name,
        "address": kp.address,
        "public_key": bytes_to_hex(kp.public_key),
    }
    wallet_path.write_text(json.dumps(wallet_data, indent=2))

    click.echo(f"✓ Wallet created: {name}")
    click.echo(f"  Address: {kp.address}")
    click.echo(f"  Saved to: {wallet_path}")


@wallet.command("list")
@click.pass_context
def wallet_list(ctx):
    """List all wallets"""
    wallet_dir = ctx.obj["data_dir"] / "wallets"
    if not wallet_dir.exists():
        click.echo("No wallets found.")
        return

    for wallet_file in sorted(wallet_dir.glob("*.json")):
        data = json.loads(wallet_file.read_text())
        click.echo(f"  {data['name']}: {data['address']}")


# =============================================================================
# Account Commands
# =============================================================================


@cli.command("deposit")
@click.argument("account")
@click.argument("amount")
@market_command
def deposit(market, account, amount):
    """Credit AMOUNT ether to ACCOUNT"""
    ctx = click.get_current_context()
    address = resolve_account(ctx, account)
    receipt = market.deposit(address, ether(amount))
    click.echo(f"✓ Deposited {amount} ETH to {address[:12]}...")
    echo_receipt(receipt)


@cli.command("balance")
@click.argument("account")
@market_command
def balance(market, account):
    """Show spendable balance and pending payout"""
    from nftmarket.utils.units import format_ether

    address = resolve_account(click.get_current_context(), account)
    click.echo(f"Address: {address}")
    click.echo(f"  Balance: {format_ether(market.balance_of(address))}")
    click.echo(f"  Pending payout: {format_ether(market.pending_payout(address))}")


@cli.command("withdraw")
@click.argument("account")
@market_command
def withdraw(market, account):
    """Move ACCOUNT's pending payout into its balance"""
    from nftmarket.utils.units import format_ether

    address = resolve_account(click.get_current_context(), account)
    receipt = market.withdraw(address)
    click.echo(f"✓ Withdrew {format_ether(receipt.details['amount'])}")
    echo_receipt(receipt)


# =============================================================================
# Listing Commands
# =============================================================================


@cli.command("list")
@click.option("--seller", required=True, help="Seller wallet or address")
@click.option("--contract", required=True, help="NFT contract address")
@click.option("--token-id", required=True, type=int, help="Token id")
@click.option("--price", required=True, help="Asking price in ETH")
@click.option("--fee", default=None, help="Listing fee in ETH (defaults to the current fee)")
@market_command
def list_item(market, seller, contract, token_id, price, fee):
    """List a token at a fixed price"""
    ctx = click.get_current_context()
    fee_paid = ether(fee) if fee is not None else market.listing_fee
    receipt = market.create_listing(resolve_account(ctx, seller), contract, token_id, ether(price), fee_paid)
    click.echo(f"✓ Listed as item {receipt.item_id} for {price} ETH")
    echo_receipt(receipt)


@cli.command("auction")
@click.option("--seller", required=True, help="Seller wallet or address")
@click.option("--contract", required=True, help="NFT contract address")
@click.option("--token-id", required=True, type=int, help="Token id")
@click.option("--start-price", required=True, help="Starting price in ETH")
@click.option("--fee", default=None, help="Listing fee in ETH (defaults to the current fee)")
@market_command
def auction(market, seller, contract, token_id, start_price, fee):
    """Put a token up for auction"""
    ctx = click.get_current_context()
    fee_paid = ether(fee) if fee is not None else market.listing_fee
    receipt = market.create_auction(resolve_account(ctx, seller), contract, token_id, ether(start_price), fee_paid)
    click.echo(f"✓ Auction {receipt.item_id} open until {receipt.details['auction_end_time']}")
    echo_receipt(receipt)


@cli.command("buy")
@click.argument("item_id", type=int)
@click.option("--buyer", required=True, help="Buyer wallet or address")
@click.option("--amount", default=None, help="Amount in ETH (defaults to the asking price)")
@market_command
def buy(market, item_id, buyer, amount):
    """Buy a fixed-price listing"""
    ctx = click.get_current_context()
    paid = ether(amount) if amount is not None else market.fetch_market_item(item_id).price
    receipt = market.close_listing(item_id, resolve_account(ctx, buyer), paid)
    click.echo(f"✅ Item {item_id} sold")
    echo_receipt(receipt)


@cli.command("cancel")
@click.argument("item_id", type=int)
@click.option("--seller", required=True, help="Seller wallet or address")
@market_command
def cancel(market, item_id, seller):
    """Withdraw an unsold item (listing fee is forfeited)"""
    receipt = market.cancel_listing(item_id, resolve_account(click.get_current_context(), seller))
    click.echo(f"✓ Item {item_id} cancelled")
    echo_receipt(receipt)


@cli.command("bid")
@click.argument("item_id", type=int)
@click.option("--bidder", required=True, help="Bidder wallet or address")
@click.option("--amount", required=True, help="Bid in ETH")
@market_command
def bid(market, item_id, bidder, amount):
    """Bid on an active auction"""
    receipt = market.place_bid(item_id, resolve_account(click.get_current_context(), bidder), ether(amount))
    click.echo(f"✓ Bid {amount} ETH on auction {item_id}")
    if receipt.details["refunded"]:
        click.echo(f"  Refunded previous bidder {receipt.details['refunded'][:12]}...")
    echo_receipt(receipt)


@cli.command("end-auction")
@click.argument("item_id", type=int)
@market_command
def end_auction(market, item_id):
    """Close an expired auction"""
    from nftmarket.utils.units import format_ether

    receipt = market.end_auction(item_id)
    if receipt.details["winner"]:
        click.echo(f"✅ Auction {item_id} won by {receipt.details['winner'][:12]}... "
                   f"for {format_ether(receipt.details['price'])}")
    else:
        click.echo(f"✓ Auction {item_id} ended without bids")
    echo_receipt(receipt)


# =============================================================================
# Offer Commands
# =============================================================================


@cli.command("offer")
@click.argument("item_id", type=int)
@click.option("--offerer", required=True, help="Offerer wallet or address")
@click.option("--amount", required=True, help="Offer in ETH")
@click.option("--expires-in", default=86400, type=int, help="Seconds until the offer expires")
@market_command
def offer(market, item_id, offerer, amount, expires_in):
    """Make an escrowed offer on an item"""
    expiration = market.clock() + expires_in
    receipt = market.make_offer(item_id, resolve_account(click.get_current_context(), offerer), ether(amount), expiration)
    click.echo(f"✓ Offer {receipt.details['offer_index']} on item {item_id}: {amount} ETH")
    echo_receipt(receipt)


@cli.command("accept-offer")
@click.argument("item_id", type=int)
@click.argument("offer_index", type=int)
@click.option("--seller", required=True, help="Seller wallet or address")
@market_command
def accept_offer(market, item_id, offer_index, seller):
    """Accept an offer, selling the item to the offerer"""
    receipt = market.accept_offer(item_id, offer_index, resolve_account(click.get_current_context(), seller))
    click.echo(f"✅ Offer {offer_index} accepted; item {item_id} sold to {receipt.details['buyer'][:12]}...")
    echo_receipt(receipt)


@cli.command("items")
@click.option("--all", "show_all", is_flag=True, help="Include sold and closed items")
@market_command
def items(market, show_all):
    """List market items"""
    from nftmarket.utils.units import format_ether

    rows = market.ledger.items.values() if show_all else market.fetch_market_items()
    rows = sorted(rows, key=lambda i: i.item_id)
    if not rows:
        click.echo("No items.")
        return

    for item in rows:
        kind = "auction" if item.is_auction else "fixed"
        line = f"  #{item.item_id} {kind:7} {item.nft_contract[:10]}#{item.token_id} {format_ether(item.price)} [{item.state.name}]"
        if item.is_auction:
            highest = market.highest_bid(item.item_id)
            if highest is not None:
                line += f" high={format_ether(highest.amount)}"
        click.echo(line)


# =============================================================================
# Collection Commands
# =============================================================================


@cli.group()
def collection():
    """Collection factory commands"""
    pass


@collection.command("create")
@click.option("--creator", required=True, help="Creator wallet or address")
@click.option("--name", required=True, help="Collection name")
@click.option("--symbol", required=True, help="Ticker symbol")
@click.option("--category", required=True, help="Registered category")
@click.option("--description", default=None, help="Description")
@market_command
def collection_create(market, creator, name, symbol, category, description):
    """Deploy a new collection"""
    metadata = {"name": name, "symbol": symbol, "category": category, "description": description}
    receipt = market.create_collection(resolve_account(click.get_current_context(), creator), metadata)
    click.echo(f"✓ Collection created: {receipt.details['name']} ({receipt.details['symbol']})")
    click.echo(f"  Address: {receipt.details['address']}")
    echo_receipt(receipt)


@collection.command("list")
@click.option("--category", default=None, help="Only this category")
@market_command
def collection_list(market, category):
    """List collections"""
    from nftmarket.utils.units import format_ether

    rows = market.get_collections_by_category(category) if category else market.get_all_collections()
    if not rows:
        click.echo("No collections.")
        return

    for c in rows:
        click.echo(f"  {c.name} ({c.symbol}) [{c.category}] {c.address}")
        click.echo(f"    floor={format_ether(c.floor_price)} sales={c.total_sales} "
                   f"volume={format_ether(c.total_volume)} 24h={market.sales_24h(c.address)}")


@cli.command("mint")
@click.argument("collection_address")
@click.option("--creator", required=True, help="Collection creator wallet or address")
@click.option("--to", "recipient", default=None, help="Recipient (defaults to the creator)")
@click.option("--uri", required=True, help="Token URI")
@market_command
def mint(market, collection_address, creator, recipient, uri):
    """Mint the next token of a collection"""
    ctx = click.get_current_context()
    creator_address = resolve_account(ctx, creator)
    to = resolve_account(ctx, recipient) if recipient else creator_address
    receipt = market.mint(collection_address, creator_address, to, uri)
    click.echo(f"✓ Minted token #{receipt.details['token_id']} to {to[:12]}...")
    echo_receipt(receipt)


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
def demo():
    """Run an in-memory walkthrough of listings, auctions and offers"""
    from nftmarket.core.clock import ManualClock
    from nftmarket.core.config import MarketConfig
    from nftmarket.core.marketplace import Marketplace
    from nftmarket.crypto import generate_keypair
    from nftmarket.utils.units import to_wei, format_ether

    click.echo("=" * 60)
    click.echo("  NFT MARKET - DEMO")
    click.echo("=" * 60)
    click.echo()

    # Setup
    click.echo("📦 Initializing marketplace...")
    clock = ManualClock()
    market = Marketplace(config=MarketConfig(), clock=clock)
    alice = generate_keypair().address
    bob = generate_keypair().address
    carol = generate_keypair().address
    fee = market.listing_fee

    for who in (alice, bob, carol):
        market.deposit(who, to_wei(10))
    click.echo(f"  ✓ Alice, Bob and Carol funded with 10 ETH each")
    click.echo(f"  ✓ Listing fee: {format_ether(fee)}")
    click.echo()

    # Collection
    click.echo("🎨 Alice creates a collection and mints two tokens...")
    receipt = market.create_collection(alice, {"name": "Demo Apes", "symbol": "dape", "category": "art"})
    nft = receipt.details["address"]
    market.mint(nft, alice, alice, "ipfs://demo/1")
    market.mint(nft, alice, alice, "ipfs://demo/2")
    click.echo(f"  ✓ Collection at {nft[:12]}..., tokens #1 and #2")
    click.echo()

    # Fixed price
    click.echo("🏷️  Alice lists token #1 for 1 ETH, Bob buys it...")
    listing = market.create_listing(alice, nft, 1, to_wei(1), fee)
    market.close_listing(listing.item_id, bob, to_wei(1))
    click.echo(f"  ✓ Owner of #1: Bob ({market.owner_of(nft, 1) == bob})")
    click.echo()

    # Auction
    click.echo("🔨 Alice auctions token #2 from 1 ETH...")
    auction_receipt = market.create_auction(alice, nft, 2, to_wei(1), fee)
    item_id = auction_receipt.item_id
    for who, amount in ((bob, "1.0"), (carol, "1.1"), (bob, "1.2")):
        market.place_bid(item_id, who, to_wei(amount))
        click.echo(f"  ✓ Bid {amount} ETH")

    clock.advance(market.auctions.duration)
    market.end_auction(item_id)
    click.echo(f"  ✓ Auction ended, winner Bob ({market.owner_of(nft, 2) == bob})")
    click.echo(f"  ✓ Carol refunded: {format_ether(market.balance_of(carol))}")
    click.echo()

    # Offer
    click.echo("🤝 Bob relists token #1, Carol makes an offer, Bob accepts...")
    relist = market.create_listing(bob, nft, 1, to_wei(5), fee)
    offer_receipt = market.make_offer(relist.item_id, carol, to_wei(2), clock() + 3600)
    market.accept_offer(relist.item_id, offer_receipt.details["offer_index"], bob)
    click.echo(f"  ✓ Owner of #1: Carol ({market.owner_of(nft, 1) == carol})")
    click.echo()

    # Payouts
    click.echo("💸 Sellers withdraw proceeds...")
    for name, who in (("Alice", alice), ("Bob", bob)):
        paid = market.withdraw(who).details["amount"]
        click.echo(f"  ✓ {name}: +{format_ether(paid)} -> {format_ether(market.balance_of(who))}")
    click.echo()

    # Stats
    stats = market.stats()
    click.echo("📊 Final Statistics:")
    click.echo(f"  Items: {stats['ledger']}")
    click.echo(f"  Funds: {stats['funds']}")
    click.echo(f"  Collection: {market.get_collection(nft).total_sales} sales, "
               f"floor {format_ether(market.get_collection(nft).floor_price)}")
    click.echo(f"  Conserved: {market.is_conserved()}")
    click.echo()
    click.echo("✅ Demo complete!")


# =============================================================================
# Stats Command
# =============================================================================


@cli.command("stats")
@market_command
def stats(market):
    """Show marketplace statistics"""
    from nftmarket.utils.units import format_ether

    s = market.stats()
    click.echo("NFT Market Statistics")
    click.echo("-" * 40)
    click.echo(f"  Operations: {s['sequence']}")
    click.echo(f"  Items: {s['ledger']['items']} ({s['ledger']['open']} open, {s['ledger']['sold']} sold)")
    click.echo(f"  Volume: {format_ether(s['ledger']['volume'])}")
    click.echo(f"  Listing fee: {format_ether(s['ledger']['listing_fee'])}")
    click.echo(f"  Escrowed: {format_ether(s['funds']['escrowed'])}")
    click.echo(f"  Fees collected: {format_ether(s['funds']['fees_collected'])}")
    click.echo(f"  Collections: {s['collections']['collections']} ({s['collections']['tokens']} tokens)")
    click.echo(f"  Offers: {s['offers']['total_offers']} ({s['offers']['pending']} pending)")


if __name__ == "__main__":
    cli()
