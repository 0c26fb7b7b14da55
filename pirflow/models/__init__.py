"""
PIR Workflow Service
SQLAlchemy extension instance shared by all models.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
