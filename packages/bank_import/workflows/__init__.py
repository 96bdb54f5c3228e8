"""End-to-end workflows composing staging operations with database sessions."""
