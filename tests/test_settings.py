from pathlib import Path

import pytest

from syntropy_provision.settings import DEFAULT_DNS_SERVERS, Settings, load_config_file


def test_defaults_from_environment(tmp_path):
    settings = Settings.from_env({'HOME': str(tmp_path), 'USER': 'alice'})

    assert settings.state_root == tmp_path / '.syntropy'
    assert settings.operator == 'alice'
    assert settings.keys_dir == tmp_path / '.syntropy' / 'keys'
    assert settings.nodes_dir == tmp_path / '.syntropy' / 'nodes'
    assert settings.dns_servers == DEFAULT_DNS_SERVERS
    assert settings.cidata_size_mib == 128


def test_windows_style_environment(tmp_path):
    settings = Settings.from_env({'USERPROFILE': str(tmp_path), 'USERNAME': 'bob'})
    assert settings.state_root == tmp_path / '.syntropy'
    assert settings.operator == 'bob'


def test_config_file_overrides(tmp_path):
    state = tmp_path / '.syntropy'
    state.mkdir()
    (state / 'config.yaml').write_text(
        'dns_servers: [9.9.9.9, 149.112.112.112]\n'
        'timezone: America/Sao_Paulo\n'
        'cidata_size_mib: 64\n'
    )
    settings = Settings.from_env({'HOME': str(tmp_path), 'SYNTROPY_LOG_LEVEL': 'DEBUG'})

    assert settings.dns_servers == ['9.9.9.9', '149.112.112.112']
    assert settings.timezone == 'America/Sao_Paulo'
    assert settings.cidata_size_mib == 64
    assert settings.log_level == 'DEBUG'


def test_config_path_from_environment(tmp_path):
    config = tmp_path / 'alt.yaml'
    config.write_text('locale: pt_BR.UTF-8\n')
    settings = Settings.from_env({'HOME': str(tmp_path), 'SYNTROPY_CONFIG': str(config)})
    assert settings.locale == 'pt_BR.UTF-8'


@pytest.mark.parametrize('content, message', [
    ('- a\n- b\n', 'mapping'),
    ('colour: blue\n', "unknown setting 'colour'"),
    ('cidata_size_mib: lots\n', 'must be of type int'),
    ('cidata_size_mib: true\n', 'must be of type int'),
])
def test_bad_config_files(tmp_path, content, message):
    path = tmp_path / 'config.yaml'
    path.write_text(content)
    with pytest.raises(ValueError, match=message):
        load_config_file(path)


def test_empty_config_file(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('')
    assert load_config_file(path) == {}


def test_with_overrides_keeps_original():
    base = Settings(state_root=Path('/srv/state'))
    changed = base.with_overrides({'gateway': '10.0.0.1'})
    assert changed.gateway == '10.0.0.1'
    assert base.gateway == '192.168.1.1'


def test_session_scratch_lives_under_state_root(tmp_path):
    settings = Settings.from_env({'HOME': str(tmp_path), 'TEMP': 'C:\\Users\\bob\\AppData\\Local\\Temp'})
    assert settings.work_root == tmp_path / '.syntropy' / 'work'
