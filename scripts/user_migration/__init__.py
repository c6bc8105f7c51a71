"""Clerk to WorkOS user migration.

Streams a Clerk user export (CSV or JSON array), reconciles each user against
WorkOS User Management with bounded concurrency and rate-limit back-off, and
reports the outcome of every record.
"""
