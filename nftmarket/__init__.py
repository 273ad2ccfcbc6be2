"""
NFT Marketplace Core

An off-chain marketplace service integrating:
- Fixed-price listings with listing fees
- Time-boxed auctions with outbid refunds
- Escrowed offers with expirations
- Collection factory, minting and sale stats
"""

__version__ = "0.1.0"
