"""Settings library for the sync configuration.

Provides:
    - Application paths (config, auth and database locations under the Qt AppData dir).
    - Schema validation and enforcement for the config.json structure.
    - Loading, saving, reverting, and managing configuration sections.
"""

import json
import logging
import pathlib
import shutil
import urllib.parse
from typing import Dict, Any, Optional

from PySide6 import QtCore

from ..status import status

app_name: str = 'ExpenseSync'

CONFIG_SCHEMA: Dict[str, Any] = {
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'url': {'type': str, 'required': True},
            'api_key': {'type': str, 'required': True},
            'timeout': {'type': float, 'required': True, 'min': 0.1},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'item_schema': {
            'interval': {'type': int, 'required': True, 'min': 1},
            'retry_delay': {'type': int, 'required': True, 'min': 0},
            'max_retries': {'type': int, 'required': True, 'min': 0},
            'sync_on_start': {'type': bool, 'required': True},
        }
    },
    'connectivity': {
        'type': dict,
        'required': True,
        'item_schema': {
            'host': {'type': str, 'required': True},
            'port': {'type': int, 'required': True, 'min': 1, 'max': 65535},
            'timeout': {'type': float, 'required': True, 'min': 0.1},
        }
    },
}


def _check_type(value: Any, expected: type) -> bool:
    """Check a config value against a schema type.

    ``bool`` is not accepted where a number is expected, and ``int`` is accepted
    where a ``float`` is expected.
    """
    if expected is bool:
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if expected is float:
        return isinstance(value, (int, float))
    return isinstance(value, expected)


def _validate_section(section_name: str, section: Dict[str, Any], item_schema: Dict[str, Any]) -> None:
    """Validate a single section of the config against its item schema.

    Args:
        section_name: Name of the section, used in error messages.
        section: Section data to validate.
        item_schema: Mapping of key names to {'type', 'required', 'min', 'max'} specs.

    Raises:
        TypeError: If a value has the wrong type.
        ValueError: If a required key is missing or a value is out of range.
    """
    logging.debug(f'Validating "{section_name}" section.')
    for key, spec in item_schema.items():
        if key not in section:
            if spec.get('required'):
                msg: str = f'Section "{section_name}" is missing required key "{key}".'
                logging.error(msg)
                raise ValueError(msg)
            continue

        value = section[key]
        if not _check_type(value, spec['type']):
            msg = f'"{section_name}.{key}" must be {spec["type"].__name__}, got {type(value).__name__}.'
            logging.error(msg)
            raise TypeError(msg)

        if 'min' in spec and value < spec['min']:
            msg = f'"{section_name}.{key}" must be >= {spec["min"]}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)
        if 'max' in spec and value > spec['max']:
            msg = f'"{section_name}.{key}" must be <= {spec["max"]}, got {value}.'
            logging.error(msg)
            raise ValueError(msg)


class ConfigPaths:
    """Manage application file paths and ensure the default config exists.

    Paths are resolved under the Qt AppData location so that tests can redirect
    them with ``QtCore.QStandardPaths.setTestModeEnabled``.
    """

    def __init__(self) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')
        logging.debug(f'Setting application name: {app_name}')

        p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
        app_data_dir = pathlib.Path(p)
        logging.debug(f'Using app data directory: {app_data_dir}')

        self.template_dir: pathlib.Path = pathlib.Path(__file__).parent.parent / 'config'
        self.config_template: pathlib.Path = self.template_dir / 'config.json.template'

        self.config_dir: pathlib.Path = app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        self.config_path: pathlib.Path = self.config_dir / 'config.json'
        self.session_path: pathlib.Path = self.auth_dir / 'session.json'
        self.db_path: pathlib.Path = self.db_dir / 'offline.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Verify the template exists, create directories and seed config.json.

        Raises:
            FileNotFoundError: If the config template is missing.
        """
        if not self.config_template.exists():
            msg: str = f'Missing config template: {self.config_template}'
            logging.error(msg)
            raise FileNotFoundError(msg)

        for path in (self.config_dir, self.auth_dir, self.db_dir):
            if not path.exists():
                logging.debug(f'Creating directory: {path}')
                path.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            logging.debug(f'Copying default config from template to {self.config_path}')
            shutil.copy(self.config_template, self.config_path)

    def revert_config_to_template(self) -> None:
        """Restore config.json from the default template file."""
        logging.debug(f'Reverting config to template: {self.config_template}')
        shutil.copy(self.config_template, self.config_path)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save config.json sections.
    """

    def __init__(self, config_path: Optional[str] = None) -> None:
        """Initialize SettingsAPI and load the config data.

        Args:
            config_path: Optional path to a custom config.json file.
        """
        super().__init__()

        self.config_path: pathlib.Path = pathlib.Path(config_path) if config_path else self.config_path

        self.config_data: Dict[str, Any] = {}
        for k in CONFIG_SCHEMA.keys():
            self.config_data[k] = {}

        self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load config.json from disk and validate against schema.

        Returns:
            The loaded config data dictionary.

        Raises:
            status.ConfigNotFoundException: If config.json is missing.
            status.ConfigInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading config from "{self.config_path}"')
        if not self.config_path.exists():
            raise status.ConfigNotFoundException(str(self.config_path))

        try:
            with self.config_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
            self.validate_config_data(data)
        except (ValueError, TypeError) as ex:
            raise status.ConfigInvalidException(str(ex)) from ex

        self.config_data = data
        return self.config_data

    def validate_config_data(self, data: Dict[str, Any] = None) -> None:
        """Validate config data against the defined CONFIG_SCHEMA.

        Args:
            data (dict, optional): Config data to validate. Defaults to self.config_data.

        Raises:
            ValueError: If a required section or key is missing, or a value is out of range.
            TypeError: If a section or value has the wrong type.
        """
        if data is None:
            data = self.config_data
        if not isinstance(data, dict):
            raise TypeError('Config data must be a dict.')

        for field, specs in CONFIG_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise ValueError(f'Missing required section: {field}')
            if field not in data:
                continue
            if not isinstance(data[field], specs['type']):
                raise TypeError(f'Section "{field}" must be {specs["type"].__name__}, got {type(data[field]).__name__}.')
            _validate_section(field, data[field], specs['item_schema'])

        logging.debug('Config data is valid.')

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of a configuration section.

        Raises:
            KeyError: If section_name is not a known section.
        """
        return self.config_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Validate, replace and persist a configuration section.

        Args:
            section_name: Section to update.
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unknown or new_data is invalid.
            TypeError: If new_data has values of the wrong type.
        """
        if section_name not in CONFIG_SCHEMA:
            raise ValueError(f'Unknown section: "{section_name}"')

        _validate_section(section_name, new_data, CONFIG_SCHEMA[section_name]['item_schema'])
        self.config_data[section_name] = dict(new_data)
        self.save_section(section_name)

        from ..core.signals import signals
        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a single section to the template's values and persist it."""
        if section_name not in CONFIG_SCHEMA:
            raise ValueError(f'Unknown section: "{section_name}"')

        with self.config_template.open('r', encoding='utf-8') as f:
            template_data: Dict[str, Any] = json.load(f)

        self.config_data[section_name] = template_data[section_name]
        self.save_section(section_name)

        from ..core.signals import signals
        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section to config.json.

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name not in self.config_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.config_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.config_data[section_name]

        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)

    @property
    def remote_url(self) -> str:
        """Configured base url of the remote store, without a trailing slash."""
        return self.config_data['remote'].get('url', '').rstrip('/')

    @property
    def connectivity_host(self) -> str:
        """Host reached by the connectivity check, defaults to the remote store's host."""
        host = self.config_data['connectivity'].get('host', '')
        if host:
            return host
        return urllib.parse.urlparse(self.remote_url).hostname or ''


settings: SettingsAPI = SettingsAPI()
