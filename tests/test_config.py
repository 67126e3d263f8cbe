import json

import pytest

from lanekeeper.config import Config, parse_rate, write_config
from lanekeeper.errors import ConfigurationMissing

from conftest import make_config


class TestParseRate:
    def test_units(self):
        assert parse_rate('50mbit') == 50_000_000
        assert parse_rate('1gbit') == 1_000_000_000
        assert parse_rate('512kbit') == 512_000
        assert parse_rate('2mbps') == 16_000_000
        assert parse_rate(' 10Mbit ') == 10_000_000

    def test_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_rate('fast')
        with pytest.raises(ValueError):
            parse_rate('100')


class TestConfig:
    def test_defaults(self, tmp_path):
        cfg = make_config(tmp_path)
        assert cfg.lan_interface == 'br-lan'
        assert cfg.wan_interface == 'eth1'
        assert cfg.fast_mark == 5
        assert cfg.filter_resolver == '208.67.222.123'
        assert cfg.mode == 'device-controls'
        assert cfg.poll_interval == 300
        assert cfg.api_base == 'https://control.example.com/api/router'

    def test_empty_prefix_gives_bare_paths(self, tmp_path):
        cfg = make_config(tmp_path, api_prefix='')
        assert cfg.api_base == 'https://control.example.com'

    def test_wan_interface_is_required(self, tmp_path):
        with pytest.raises(ConfigurationMissing):
            Config('x.json', data={'household_id': 'h',
                                   'server_url': 'http://a'})

    def test_household_optional_while_provisioning(self, tmp_path):
        data = {'server_url': 'http://a', 'wan_interface': 'wan'}
        with pytest.raises(ConfigurationMissing):
            Config('x.json', data=data)
        cfg = Config('x.json', data=data, provisioning=True)
        assert cfg.household_id == ''

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationMissing):
            Config(str(tmp_path / 'nope.json'))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{not json')
        with pytest.raises(ValueError):
            Config(str(path))

    def test_invalid_values(self, tmp_path):
        with pytest.raises(ValueError):
            make_config(tmp_path, mode='turbo')
        with pytest.raises(ValueError):
            make_config(tmp_path, slow_speed='slowish')
        with pytest.raises(ValueError):
            make_config(tmp_path, lan_interface='eth1')

    def test_loads_from_file(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'household_id': 7,
                                    'server_url': 'http://a/',
                                    'wan_interface': 'wan'}))
        cfg = Config(str(path))
        assert cfg.household_id == '7'
        assert cfg.server_url == 'http://a'


def test_write_config_merges(tmp_path):
    path = tmp_path / 'etc' / 'config.json'
    write_config(str(path), {'server_url': 'http://a'})
    write_config(str(path), {'household_id': 'hh-1'})
    assert json.loads(path.read_text()) == {'server_url': 'http://a',
                                            'household_id': 'hh-1'}
