"""
Unit tests for configuration loading (pgbackups/config.py).
"""

import os

import pytest

from pgbackups import create_app
from pgbackups.config import (
    ConfigError,
    Site,
    parse_site,
    load_sites,
    load_conf_file,
)
from pgbackups.notifications import create_notifier


class TestSite:
    def test_site_id_strips_postgres_suffix(self):
        assert Site('shop-postgres', 'shop-backups').site_id == 'shop'

    def test_site_id_keeps_other_names(self):
        assert Site('wiki_postgres', 'wiki-backups').site_id == 'wiki_postgres'
        assert Site('analytics', 'analytics-backups').site_id == 'analytics'


class TestParseSite:
    def test_parse_site(self):
        assert parse_site(' shop-postgres:shop-backups \n') == Site('shop-postgres', 'shop-backups')

    @pytest.mark.parametrize('entry', ['shop-postgres', ':shop-backups', 'shop-postgres:', ':'])
    def test_parse_invalid_site(self, entry):
        with pytest.raises(ConfigError, match='Expected CONTAINER:BUCKET'):
            parse_site(entry)


class TestLoadSites:
    def test_load_sites_in_file_order(self, sites_file):
        sites = load_sites(sites_file)

        assert [site.source_ref for site in sites] == ['shop-postgres', 'blog-postgres', 'wiki_postgres']
        assert sites[0].store_ref == 'shop-backups'

    def test_load_sites_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_sites(str(tmp_path / 'sites.conf'))

    def test_load_sites_invalid_entry(self, tmp_path):
        path = tmp_path / 'sites.conf'
        path.write_text('shop-postgres:shop-backups\nbroken-line\n')

        with pytest.raises(ConfigError, match='broken-line'):
            load_sites(str(path))


class TestLoadConfFile:
    def _write(self, path, content, mode=0o600):
        path.write_text(content)
        os.chmod(path, mode)
        return str(path)

    def test_parses_shell_style_values(self, tmp_path):
        path = self._write(tmp_path / 'email.conf', (
            '# Email settings\n'
            'EMAIL_ENABLED=true\n'
            'export EMAIL_FROM="backups@example.com"\n'
            "EMAIL_TO='ops@example.com'\n"
            'EMAIL_WEEKLY_DIGEST=false\n'
        ))

        assert load_conf_file(path) == {
            'EMAIL_ENABLED': True,
            'EMAIL_FROM': 'backups@example.com',
            'EMAIL_TO': 'ops@example.com',
            'EMAIL_WEEKLY_DIGEST': False,
        }

    def test_trailing_comments_are_stripped(self, tmp_path):
        path = self._write(tmp_path / 'email.conf', (
            'EMAIL_ON_FAILURE=false  # only the digest, please\n'
            'AWS_DEFAULT_REGION=eu-west-1 # frankfurt later\n'
            'EMAIL_TO="ops@example.com" # pager rotation\n'
        ))

        values = load_conf_file(path)

        assert values['EMAIL_ON_FAILURE'] is False
        assert values['AWS_DEFAULT_REGION'] == 'eu-west-1'
        assert values['EMAIL_TO'] == 'ops@example.com'

    def test_trailing_comment_disables_failure_alerts(self, tmp_path):
        path = self._write(tmp_path / 'email.conf', (
            'EMAIL_ENABLED=true\n'
            'EMAIL_FROM=backups@example.com\n'
            'EMAIL_TO=ops@example.com\n'
            'EMAIL_ON_FAILURE=false  # only the digest, please\n'
        ))

        notifier = create_notifier({**load_conf_file(path), 'AWS_DEFAULT_REGION': 'us-east-1'})

        assert notifier.on_failure is False

    def test_insecure_permissions_warn(self, tmp_path, caplog):
        path = self._write(tmp_path / 'aws.conf', 'AWS_ACCESS_KEY_ID=abc\n', mode=0o644)

        assert load_conf_file(path) == {'AWS_ACCESS_KEY_ID': 'abc'}
        assert 'insecure permissions (644)' in caplog.text

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_conf_file(str(tmp_path / 'aws.conf'))


class TestCreateApp:
    """Test configuration layering in the app factory."""

    def test_testing_config(self, app):
        assert app.config['TESTING'] is True
        assert app.config['EMAIL_ENABLED'] is False
        assert os.path.isdir(app.config['BACKUP_DIR'])
        assert os.path.isdir(app.config['LOG_DIR'])

    def test_conf_files_override_class_defaults(self, tmp_path):
        config_dir = tmp_path / 'config'
        config_dir.mkdir()
        aws_conf = config_dir / 'aws.conf'
        aws_conf.write_text('AWS_ACCESS_KEY_ID=from-file\nAWS_DEFAULT_REGION=eu-west-1\n')
        os.chmod(aws_conf, 0o600)

        app = create_app('testing', overrides={
            'CONFIG_DIR': str(config_dir),
            'BACKUP_DIR': str(tmp_path / 'backups'),
            'LOG_DIR': str(tmp_path / 'logs'),
        })

        assert app.config['AWS_ACCESS_KEY_ID'] == 'from-file'
        assert app.config['AWS_DEFAULT_REGION'] == 'eu-west-1'

    def test_overrides_win_over_conf_files(self, tmp_path):
        config_dir = tmp_path / 'config'
        config_dir.mkdir()
        aws_conf = config_dir / 'aws.conf'
        aws_conf.write_text('AWS_DEFAULT_REGION=eu-west-1\n')
        os.chmod(aws_conf, 0o600)

        app = create_app('testing', overrides={
            'CONFIG_DIR': str(config_dir),
            'BACKUP_DIR': str(tmp_path / 'backups'),
            'LOG_DIR': str(tmp_path / 'logs'),
            'AWS_DEFAULT_REGION': 'ap-south-1',
        })

        assert app.config['AWS_DEFAULT_REGION'] == 'ap-south-1'

    def test_log_file_written(self, app):
        app.logger.info('hello from the test suite')

        with open(os.path.join(app.config['LOG_DIR'], 'backup.log')) as f:
            assert 'hello from the test suite' in f.read()
