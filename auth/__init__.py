"""auth/ -- Authentication and authorization package for LoanLedger.

Layer rule: auth/ imports only core/, audit/ and third-party libraries.
It does NOT import from api/ or ledger/.
api/ imports from auth/, not the other way around. The one exception is
auth/dependencies.py, which imports fastapi because it is part of the
dependency injection system.
"""
