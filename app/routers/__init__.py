"""
School Ledger - Routers Package

FastAPI route handlers.

Routers:
- accounting: Chart of Accounts, journal entries, voids, posting helpers, reports
- periods: Financial period lock state machine
- approvals: Approval workflows and decisions
- budget: Budget allocations, checks and reports
"""
