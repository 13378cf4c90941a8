from pathlib import Path

import pytest

from app import load_config, load_words, parse_flag


@pytest.mark.parametrize('value, expected', [
    ('1', True), ('true', True), ('yes', True), ('TRUE', True),
    ('0', False), ('false', False), ('', False), (' no ', False),
])
def test_parse_flag(value, expected):
    assert parse_flag(value) is expected


def test_defaults():
    config = load_config(environ={})
    assert config.max_connections == 1
    assert config.backpressure_high == 256
    assert config.backpressure_low == 4
    assert not config.disable_search
    assert config.listen_port == 8080


def test_shipped_config_matches_defaults():
    path = Path(__file__).parent / 'config.yaml'
    shipped = load_config(str(path), environ={})
    defaults = load_config(environ={})
    assert shipped.max_connections == defaults.max_connections == 1
    assert shipped.rate_limit_ms == defaults.rate_limit_ms

def test_yaml_then_environment(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('max_connections: 4\nport: 9000\nlog_level: DEBUG\n')

    config = load_config(str(path), environ={
        'MAX_CONNECTIONS': '8',
        'INSTANCE_ID': '2',
        'DISABLE_DUCK_SEARCH': 'true',
        'DISABLE_RANDOMHASH': '0',
        'FULL_INFO_GATHER_TIMEOUT': '750',
        'DATABASE_URL': 'postgresql://db/videos',
    })

    assert config.max_connections == 8
    assert config.port == 9000
    assert config.log_level == 'DEBUG'
    assert config.instance_id == 2
    assert config.listen_port == 9002
    assert config.disable_duck_search is True
    assert config.disable_random_hash is False
    assert config.full_info_gather_timeout_ms == 750.0
    assert config.postgres_url == 'postgresql://db/videos'


def test_missing_config_file_uses_defaults(tmp_path):
    config = load_config(str(tmp_path / 'absent.yaml'), environ={'PORT': '8100'})
    assert config.port == 8100


def test_gather_timeout_spread_by_instance():
    first = load_config(environ={'INSTANCE_ID': '0'})
    assert first.full_info_gather_timeout_ms == 250

    third = load_config(environ={'INSTANCE_ID': '3'})
    assert 250 <= third.full_info_gather_timeout_ms < 1750


@pytest.mark.asyncio
async def test_load_words(tmp_path):
    path = tmp_path / 'words.txt'
    path.write_text('ocean\n\n  river \nmountain\n')
    assert await load_words(str(path)) == ['ocean', 'river', 'mountain']
    assert await load_words(str(tmp_path / 'absent.txt')) == []
