"""
Requirement Tracker
Shared SQLAlchemy handle.

Usage:
    from reqtrack.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
