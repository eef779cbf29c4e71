"""
Core modules for Plan Usage.

This package contains the accounting engine: period calculation, the
quota store, the usage ledger and quota enforcement.
"""
