"""
School Ledger - Pydantic Schemas
"""
