"""Marketplace core: items, auctions, offers, escrow and collections"""
