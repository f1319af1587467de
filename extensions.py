"""Shared Flask extensions used by the discovery ledger and future modules."""

from flask_sqlalchemy import SQLAlchemy

# Bound in create_app(); the ledger, leaderboard and audit script share this session.
db = SQLAlchemy()
