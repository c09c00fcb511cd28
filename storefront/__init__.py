"""
Storefront backend package.

This package provides a FastAPI application that fronts the hosted Supabase
project (auth, tables and procedures) for the reseller storefront, with
in-memory backends for local runs and tests.
"""
