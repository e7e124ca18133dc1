"""flowfolders DB — SQLAlchemy base, engine registry, and table models."""
