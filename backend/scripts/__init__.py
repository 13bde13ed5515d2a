"""Registration Sync - maintenance scripts."""
