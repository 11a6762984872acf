"""
Certification Portal
Shared SQLAlchemy instance.

Every model module imports ``db`` from here:
    from portal.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
