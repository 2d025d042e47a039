"""Service layer for the quota service."""
