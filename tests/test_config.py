import sys

sys.path.insert(0, '.')

import pytest

from config import Config, SectionProxy
from config.utils import get_config_section


def test_config_expands_environment(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "live:\n"
        "  open_threshold: 4\n"
        "  order_webhook: ${TEST_LIVE_URL}\n"
        "  missing: ${TEST_UNSET_VAR}\n"
        "api:\n"
        "  cors_origins:\n"
        "    - ${TEST_ORIGIN}\n"
    )
    monkeypatch.setenv('TEST_LIVE_URL', 'http://exec.local/signal')
    monkeypatch.setenv('TEST_ORIGIN', 'http://localhost:4200')
    monkeypatch.delenv('TEST_UNSET_VAR', raising=False)

    cfg = Config(str(path))
    assert isinstance(cfg.live, SectionProxy)
    assert cfg.live.order_webhook == 'http://exec.local/signal'
    assert cfg.live['missing'] == '${TEST_UNSET_VAR}'
    assert cfg.api['cors_origins'] == ['http://localhost:4200']
    assert cfg.get('absent') is None
    with pytest.raises(AttributeError):
        cfg.absent


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / 'alt.yaml'
    path.write_text("engine:\n  reorder_window_ms: 5\n")
    monkeypatch.setenv('DECISION_ENGINE_CONFIG', str(path))
    assert Config().engine.reorder_window_ms == 5


def test_config_errors_raise_runtime_error(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'missing.yaml'))

    not_mapping = tmp_path / 'list.yaml'
    not_mapping.write_text("- a\n- b\n")
    with pytest.raises(RuntimeError):
        Config(str(not_mapping))

    broken = tmp_path / 'broken.yaml'
    broken.write_text("engine: [unclosed\n")
    with pytest.raises(RuntimeError):
        Config(str(broken))


def test_get_config_section_accepts_any_source(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("paper:\n  notional: 5000\n")
    cfg = Config(str(path))
    assert get_config_section(cfg, 'paper') == {'notional': 5000}
    assert get_config_section(cfg.paper, 'notional') == {}
    assert get_config_section({'paper': {'notional': 1}}, 'paper') == {'notional': 1}
    assert get_config_section(None, 'paper') == {}
    assert get_config_section({'paper': None}, 'paper') == {}


def test_shipped_config_has_every_section():
    from config import config
    for section in ('instruments', 'engine', 'paper', 'live', 'monitoring', 'api', 'view'):
        assert section in config.to_dict()
    assert config.live['open_threshold'] > 0 > config.live['close_threshold']
