"""Root conftest for all tests."""

# Register database fixtures as a plugin
pytest_plugins = ["tests.plugins.db_fixtures"]

# Shared test users
OWNER = "alice@example.com"
OTHER = "bob@example.com"
THIRD = "carol@example.com"
