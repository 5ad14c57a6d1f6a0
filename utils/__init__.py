"""Shared helpers: logging, database transactions, Redis lock, provably fair draws"""
