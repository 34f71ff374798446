"""
Sylvan — Task & Rewards Backend for the Sylvan Token Airdrop
==============================================================
Users complete engagement tasks to earn points; administrators manage
tasks, campaigns, users and automation workflows.  Every admin and system
mutation lands in an audit trail.

Package layout::

    sylvan/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared limits and windows
    ├── errors.py          # Typed service errors (mapped to HTTP)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models
    ├── engine/            # Pure logic, no I/O
    │   ├── expiration.py  # Time-limited task helpers
    │   ├── organizer.py   # Sort / filter / box-vs-list / urgency
    │   ├── workflows.py   # Condition evaluation + workflow validation
    │   ├── filters.py     # Filter criteria → SQL WHERE clause
    │   └── fraud.py       # Completion fraud scoring
    ├── services/          # DB-backed operations
    ├── api/               # FastAPI app + routers
    └── worker/            # Periodic background jobs
"""

__version__ = "0.1.0"
