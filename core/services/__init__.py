"""
Service layer of the consultation core.

Views, management commands and the scheduler call into these modules; they
never change request, invitation or ledger rows directly.
"""
