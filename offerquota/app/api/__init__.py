"""HTTP routes for the quota service."""
