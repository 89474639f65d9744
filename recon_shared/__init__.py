"""
Shared models, interfaces, exceptions and logging for the Reconciliation API Client.
"""
