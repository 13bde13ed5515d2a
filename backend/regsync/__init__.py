"""Registration Sync - due-payments reconciliation and mirror sync backend."""
