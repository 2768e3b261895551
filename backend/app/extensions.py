"""
extensions.py — Flask extension singletons.

Created here without an app and bound in the factory via init_app(), so that
tests can build isolated app instances:

    from backend.app.extensions import db, ma
"""

from flask_marshmallow import Marshmallow
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Schema classes in app/schemas/ inherit marshmallow.Schema directly, never
# ma.Schema: ma.Schema needs an application context and the schema unit tests
# run without one.
ma = Marshmallow()
