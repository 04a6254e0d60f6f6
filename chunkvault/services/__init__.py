"""Service layer helpers for chunkvault commands."""
