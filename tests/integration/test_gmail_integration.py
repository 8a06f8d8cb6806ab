"""Integration tests against a real Gmail account.

Set GMAIL_MIRROR_TEST_ACCESS_TOKEN and GMAIL_MIRROR_TEST_REFRESH_TOKEN (plus
GMAIL_MIRROR_GOOGLE_CLIENT_ID / GMAIL_MIRROR_GOOGLE_CLIENT_SECRET) to run them.
They only read from the mailbox.
"""

import os

import pytest

from gmail_mirror.config import Settings
from gmail_mirror.gmail import GmailClientFactory
from gmail_mirror.store import MailStoreRepository

ACCESS_TOKEN = os.environ.get("GMAIL_MIRROR_TEST_ACCESS_TOKEN")
REFRESH_TOKEN = os.environ.get("GMAIL_MIRROR_TEST_REFRESH_TOKEN")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not (ACCESS_TOKEN and REFRESH_TOKEN), reason="Gmail test credentials not configured"),
]


@pytest.fixture
def live_client(tmp_path):
    repository = MailStoreRepository.from_url(f"sqlite:///{tmp_path / 'live.sqlite3'}")
    repository.initialize()
    user = repository.create_user("live@example.com", access_token=ACCESS_TOKEN, refresh_token=REFRESH_TOKEN)
    factory = GmailClientFactory(Settings(), on_token_refresh=repository.update_credentials)
    yield factory.for_user(user)
    repository.engine.dispose()


class TestGmailIntegration:
    """Integration tests for Gmail API."""

    @pytest.mark.asyncio
    async def test_labels_include_inbox(self, live_client) -> None:
        await live_client.authenticate()

        labels = await live_client.list_labels()

        assert "INBOX" in {label.remote_label_id for label in labels}

    @pytest.mark.asyncio
    async def test_list_a_few_conversations(self, live_client) -> None:
        await live_client.authenticate()

        listing = await live_client.list_conversations(3)

        assert len(listing.conversations) <= 3
        for conversation in listing.conversations:
            assert all(m.remote_conversation_id == conversation.remote_conversation_id for m in conversation.messages)
