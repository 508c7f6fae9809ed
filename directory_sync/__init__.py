"""
Directory Sync - Keep an internal employee record store consistent with an identity directory.

This package provides the synchronization and reconciliation engine that pulls user
records from a directory (full listing, single lookup, group membership or change
feed) and upserts them into a tabular record store.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
