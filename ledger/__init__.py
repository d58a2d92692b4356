"""ledger/ -- Students, items, and the loan state machine.

Layer rule: ledger/ imports from core/ and audit/ only.
It does NOT import from api/ or auth/. Identity ids arrive as plain ints.
"""
