"""TreeVault Engine — Config, errors, logging, cache, retry and runtime wiring."""
