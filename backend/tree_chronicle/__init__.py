"""
Tree Chronicle Backend — Application Package
==============================================

A photo journal: projects (e.g. one tree, one garden bed) hold dated photos.
Everything lives in one SQLite file plus an upload directory, and the pair
can be exported to and restored from a single backup archive.

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Services (projects, files, backup)│  ← Business logic
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │   Store handle (gated async engine) │  ← Open / closed-for-import
    └─────────────────────────────────────┘
"""

__version__ = "1.0.0"
