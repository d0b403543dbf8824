"""
Pytest bootstrap.
Switches the app to its testing configuration before anything imports it,
so the module-level engine binds to in-memory SQLite.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ.setdefault("LOG_LEVEL", "WARNING")
