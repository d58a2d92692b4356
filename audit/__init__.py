"""audit/ -- Append-only audit trail for LoanLedger.

Layer rule: audit/ imports only core/ plus third-party libraries.
auth/ services, ledger/ services and api/ write through audit.trail.AuditTrail;
nothing in audit/ imports from them.
"""
