"""
Pytest configuration and shared fixtures for Threadline tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- slow: Tests that build larger temporary databases
- integration: Tests requiring a real chat.db or a running server

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not slow"        # Skip slow tests
- pytest -m "not integration" # Skip integration tests
- pytest                      # All tests
"""
import pytest

from tests.fixtures.chat_data import SAMPLE_VCF, ChatDbBuilder, at


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "slow: Slow tests (larger temporary databases)")
    config.addinivalue_line("markers", "integration: Integration tests (real chat.db or server required)")


def pytest_collection_modifyitems(config, items):
    """
    Auto-mark tests based on location/name for better organization.

    Tests with 'integration' or 'real_' in the name get the 'integration' marker.
    """
    for item in items:
        if "integration" in item.name or "real_" in item.name:
            item.add_marker(pytest.mark.integration)


# =============================================================================
# Messages database
# =============================================================================

@pytest.fixture
def chat_db_builder(tmp_path):
    """An empty temporary Messages database."""
    return ChatDbBuilder(tmp_path / "chat.db")


@pytest.fixture
def sample_chat_db(chat_db_builder):
    """
    Messages database with a small, known history.

    Handles:
        1 +15551234567 (iMessage)   John Smith
        2 +15551234567 (SMS)        John Smith, same number other service
        3 John.Smith@example.com    John Smith
        4 +12125551234              Jane Doe
        5 +15559876543              not in contacts

    Chats:
        1 John 1:1 (phone), 2 group John/Jane/+15559876543,
        3 Jane 1:1, 4 John 1:1 (email)
    """
    db = chat_db_builder
    john = db.add_handle("+15551234567")
    john_sms = db.add_handle("+15551234567", service="SMS")
    john_email = db.add_handle("John.Smith@example.com")
    jane = db.add_handle("+12125551234")
    stranger = db.add_handle("+15559876543")

    direct = db.add_chat([john, john_sms], "+15551234567")
    group = db.add_chat([john, jane, stranger], "chat-group")
    jane_direct = db.add_chat([jane], "+12125551234")
    email_direct = db.add_chat([john_email], "John.Smith@example.com")

    db.add_message(direct, "Hey, are we still on for Friday?", at(1, 9), handle_id=john)
    db.add_message(direct, "Yes! 7pm works", at(1, 10), is_from_me=True)
    db.add_message(group, "Dinner plans?", at(2, 18), handle_id=jane)
    db.add_message(group, "I'm in", at(2, 19), handle_id=stranger)
    db.add_message(group, None, at(2, 20), handle_id=john)  # attachment only
    db.add_message(jane_direct, "Call me when you can", at(3, 8), handle_id=jane)
    db.add_message(email_direct, "Sent you the doc", at(4, 15), handle_id=john_email)
    db.add_message(direct, "See you there", at(5, 11), handle_id=john_sms)

    return db


# =============================================================================
# Contacts export
# =============================================================================

@pytest.fixture
def sample_vcf(tmp_path):
    """A vCard export with three contacts."""
    path = tmp_path / "contacts.vcf"
    path.write_text(SAMPLE_VCF, encoding="utf-8")
    return path


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture(scope="function")
def mock_settings(sample_chat_db, sample_vcf, monkeypatch):
    """
    Mock settings for testing.

    Points both sources at temporary files to avoid touching real data.
    """
    from config.settings import Settings

    mock = Settings(
        THREADLINE_CHAT_DB_PATH=str(sample_chat_db.path),
        THREADLINE_CONTACTS_VCF_PATH=str(sample_vcf),
    )

    # Patch the global settings
    monkeypatch.setattr("config.settings.settings", mock)
    return mock


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def client(mock_settings):
    """
    Test client with the app engine built over the sample sources.

    The lifespan is not run, so the engine is installed on app.state
    directly and removed afterwards.
    """
    from fastapi.testclient import TestClient
    from api.main import app
    from api.services.message_engine import create_engine

    app.state.engine = create_engine(mock_settings)
    yield TestClient(app)
    app.state.engine = None
