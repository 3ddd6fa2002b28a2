"""Payment routing: direct, escrow or blocked, decided by risk."""
