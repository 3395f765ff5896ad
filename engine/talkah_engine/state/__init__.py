"""Persistence layer: ORM tables, engines, repositories and per-user locks."""
