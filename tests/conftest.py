"""Shared fixtures for the counting extension tests."""
from __future__ import annotations

from unittest.mock import AsyncMock, Mock

import pytest

from main import Config, Identity, Model, Settings, StateCell, Store

CHANNEL_ID = 1111
GUILD_ID = 2222
BOT_ID = 9999


@pytest.fixture
def settings():
    return Settings(
        token="test-token",
        radix=10,
        channel=CHANNEL_ID,
        guild=GUILD_ID,
        timezone="UTC",
    )


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def model(tmp_path):
    return Model(base_path=tmp_path)


@pytest.fixture
def make_cell(model):
    def factory(**fields):
        return StateCell(model, "store.json", Store(**fields))

    return factory


@pytest.fixture
def relay():
    relay = Mock()
    relay.identity = AsyncMock(
        side_effect=lambda user: Identity(int(user.id), f"user{user.id}", None)
    )
    relay.self_identity = Mock(return_value=Identity(BOT_ID, "Counting", None))
    relay.send_count = AsyncMock()
    relay.send_break_notice = AsyncMock()
    relay.send_notice = AsyncMock()
    relay.send_private_notice = AsyncMock()
    relay.delete = AsyncMock()
    return relay


def make_message(author_id, content, channel_id=CHANNEL_ID, bot=False, system=False):
    message = Mock()
    message.id = 100_000 + author_id
    message._channel_id = channel_id
    message.author.id = author_id
    message.author.bot = bot
    message.author.system = system
    message.content = content
    return message
