"""TreeVault persistence layer (SQLAlchemy)."""
