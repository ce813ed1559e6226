"""
domain_ledger — consistency engine for a multi-tenant domain registrar ledger.

Caches domain registrations fetched from an OpenSRS-style registry in
PostgreSQL, drives them through their lifecycle, keeps invoice totals and
customer balances equal to their constituent rows, and records a
hash-chained audit trail of every mutation.

Built on the Railway-Oriented Programming (ROP) framework: every public
operation returns a Result instead of raising.
"""

__version__ = "0.1.0"
