"""Service layer: domain operations over SQLAlchemy sessions."""
