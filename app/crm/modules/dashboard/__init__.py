"""Role-specific home page: today's work, nudges and headline numbers."""
