"""
Directory Sync - Reconcile directory user accounts against a CSV-declared desired state.

This package provides a reconciliation engine that compares declared user records
with a remote identity directory, computes a create/update/delete plan and applies
it through batched, partially-failable remote operations.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
