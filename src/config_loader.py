"""
Configuration loader for the Attendance Bridge
Loads and validates configuration from YAML files
Persists the healed terminal address back into the same file
"""

import re
import yaml
import logging
from typing import Dict, Any
from pathlib import Path
from datetime import datetime
import pytz

logger = logging.getLogger(__name__)

def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file with validation
    """
    try:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.error(f"Configuration file not found: {config_path}")
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_file, 'r') as f:
            try:
                config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

        # Validate required sections
        _validate_config(config)

        # Apply defaults
        config = _apply_defaults(config)

        _validate_ranges(config)

        logger.info(f"Configuration loaded from {config_path}")
        return config

    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

def _validate_config(config: Dict) -> None:
    """Validate that required configuration sections exist"""
    if not isinstance(config, dict):
        raise ValueError("Configuration root must be a mapping")

    required_sections = ['terminal', 'cloud']

    for section in required_sections:
        if section not in config or not isinstance(config[section], dict):
            raise ValueError(f"Missing required configuration section: {section}")

    for section in ['discovery', 'attendance', 'sync', 'logging']:
        if config.get(section) is not None and not isinstance(config[section], dict):
            raise ValueError(f"Configuration section {section} must be a mapping")

    # Validate terminal section
    terminal = config['terminal']
    for field in ['host', 'username', 'password']:
        if field not in terminal:
            raise ValueError(f"Missing required terminal field: {field}")

    # Validate cloud section
    cloud = config['cloud']
    for field in ['school_code', 'base_url', 'api_key']:
        if not cloud.get(field):
            raise ValueError(f"Missing required cloud field: {field}")

    base_url = cloud['base_url']
    if not isinstance(base_url, str) or not base_url.startswith(('http://', 'https://')):
        raise ValueError(f"cloud.base_url must start with http:// or https://, got: {base_url}")

def _apply_defaults(config: Dict) -> Dict:
    """Apply default values to configuration"""

    # Terminal defaults
    terminal_defaults = {
        'port': 80,
        'use_https': False,
        'ssl_verify': False,             # Terminals ship self-signed certificates
        'device_name': '',
        'page_size': 100,
        'fetch_all_pages': True,
        'timeout_seconds': 10
    }
    for key, default_value in terminal_defaults.items():
        if key not in config['terminal']:
            config['terminal'][key] = default_value
    if config['terminal']['device_name'] is None:
        config['terminal']['device_name'] = ''

    # Discovery defaults
    if not config.get('discovery'):
        config['discovery'] = {}
    discovery_defaults = {
        'enabled': True,
        'probe_timeout_seconds': 2.5,    # Per-host timeout during subnet scan
        'concurrency': 30                # Hosts probed simultaneously
    }
    for key, default_value in discovery_defaults.items():
        if key not in config['discovery']:
            config['discovery'][key] = default_value

    # Cloud defaults
    cloud_defaults = {
        'attendance_endpoint': '/attendance/sync',
        'timeout_seconds': 15,
        'batch_size': 50,
        'retry_attempts': 3,
        'retry_delay_seconds': 2,
        'ssl_verify': True,
        'ca_cert_path': None
    }
    for key, default_value in cloud_defaults.items():
        if key not in config['cloud']:
            config['cloud'][key] = default_value

    # Attendance defaults (14:30 check-out boundary)
    if not config.get('attendance'):
        config['attendance'] = {}
    attendance_defaults = {
        'timeout_hour': 14,
        'timeout_minute': 30
    }
    for key, default_value in attendance_defaults.items():
        if key not in config['attendance']:
            config['attendance'][key] = default_value

    # Sync defaults
    if not config.get('sync'):
        config['sync'] = {}
    sync_defaults = {
        'timezone': 'Africa/Nairobi',
        'interval_minutes': 5
    }
    for key, default_value in sync_defaults.items():
        if key not in config['sync']:
            config['sync'][key] = default_value

    # Logging defaults
    if not config.get('logging'):
        config['logging'] = {}
    logging_defaults = {
        'level': 'INFO',
        'file': 'logs/attendance_bridge.log',
        'console_output': True
    }
    for key, default_value in logging_defaults.items():
        if key not in config['logging']:
            config['logging'][key] = default_value

    return config

def _validate_ranges(config: Dict) -> None:
    """Validate numeric settings after defaults are in place"""
    int_fields = [
        ('terminal', 'port'), ('terminal', 'page_size'),
        ('discovery', 'concurrency'),
        ('cloud', 'batch_size'), ('cloud', 'retry_attempts'),
        ('attendance', 'timeout_hour'), ('attendance', 'timeout_minute'),
    ]
    for section, key in int_fields:
        value = config[section][key]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{section}.{key} must be an integer, got: {value!r}")

    if not 0 <= config['attendance']['timeout_hour'] <= 23:
        raise ValueError("attendance.timeout_hour must be between 0 and 23")
    if not 0 <= config['attendance']['timeout_minute'] <= 59:
        raise ValueError("attendance.timeout_minute must be between 0 and 59")
    for section, key in [('terminal', 'page_size'), ('discovery', 'concurrency'),
                         ('cloud', 'batch_size'), ('cloud', 'retry_attempts')]:
        if config[section][key] < 1:
            raise ValueError(f"{section}.{key} must be at least 1")

    try:
        pytz.timezone(config['sync']['timezone'])
    except pytz.UnknownTimeZoneError:
        raise ValueError(f"Unknown sync.timezone: {config['sync']['timezone']}")

def persist_terminal_host(config_path: str, new_host: str) -> None:
    """
    Rewrite terminal.host in the YAML file in place.
    Only the host line changes; comments and layout are preserved.
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    lines = config_file.read_text().splitlines(keepends=True)
    section_start = None
    section_end = len(lines)

    for i, line in enumerate(lines):
        stripped = line.strip()
        if not stripped or stripped.startswith('#') or line[0] in ' \t':
            continue
        if section_start is not None:
            section_end = i
            break
        if re.match(r'^terminal\s*:\s*(#.*)?$', stripped):
            section_start = i

    if section_start is None:
        raise ValueError(f"No terminal section in {config_path}")

    indent = "  "
    for i in range(section_start + 1, section_end):
        match = re.match(r'^(\s+)host\s*:([^#\n]*)(#.*)?(\r?\n)?$', lines[i])
        if match:
            comment = f" {match.group(3)}" if match.group(3) else ""
            lines[i] = f'{match.group(1)}host: "{new_host}"{comment}{match.group(4) or ""}'
            break
        if re.match(r'^(\s+)\S', lines[i]):
            indent = re.match(r'^(\s+)', lines[i]).group(1)
    else:
        if not lines[section_start].endswith('\n'):
            lines[section_start] += '\n'
        lines.insert(section_start + 1, f'{indent}host: "{new_host}"\n')

    config_file.write_text(''.join(lines))
    logger.info(f"Persisted terminal.host={new_host} to {config_path}")

class LocalTimeFormatter(logging.Formatter):
    """Custom formatter to display timestamps in the site's local timezone"""

    def __init__(self, fmt=None, tz_name: str = 'Africa/Nairobi'):
        super().__init__(fmt)
        self.local_tz = pytz.timezone(tz_name)

    def formatTime(self, record, datefmt=None):
        # Convert timestamp to site time
        dt = datetime.fromtimestamp(record.created, tz=self.local_tz)
        if datefmt:
            return dt.strftime(datefmt)
        else:
            # Default format: YYYY-MM-DD HH:MM:SS EAT
            return dt.strftime('%Y-%m-%d %H:%M:%S %Z')

def setup_logging(config: Dict) -> None:
    """Setup logging based on configuration with site-local timestamps"""
    log_config = config.get('logging', {})
    level = log_config.get('level', 'INFO')
    tz_name = config.get('sync', {}).get('timezone', 'Africa/Nairobi')

    # Configure logging format with custom local-time formatter
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = LocalTimeFormatter(log_format, tz_name)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    # Console handler
    if log_config.get('console_output', True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    # File handler
    log_file = log_config.get('file')
    if log_file:
        # Create logs directory if it doesn't exist
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    logger.info(f"Logging configured: level={level}, timezone={tz_name}, "
                f"console={log_config.get('console_output', True)}, file={log_file}")

def get_sample_config() -> Dict:
    """Return a sample configuration for reference"""
    return {
        "terminal": {
            "host": "192.168.1.64",
            "port": 80,
            "username": "admin",
            "password": "change-me",
            "use_https": False,
            "ssl_verify": False,
            "device_name": "DS-K1T342MFX-E1",
            "page_size": 100,
            "fetch_all_pages": True,
            "timeout_seconds": 10
        },
        "discovery": {
            "enabled": True,
            "probe_timeout_seconds": 2.5,
            "concurrency": 30
        },
        "cloud": {
            "school_code": "SCH001",
            "base_url": "https://school.example.com/api",
            "api_key": "your-api-key-here",
            "attendance_endpoint": "/attendance/sync",
            "timeout_seconds": 15,
            "batch_size": 50,
            "retry_attempts": 3,
            "retry_delay_seconds": 2,
            "ssl_verify": True,
            "ca_cert_path": None
        },
        "attendance": {
            "timeout_hour": 14,
            "timeout_minute": 30
        },
        "sync": {
            "timezone": "Africa/Nairobi",
            "interval_minutes": 5
        },
        "logging": {
            "level": "INFO",
            "file": "logs/attendance_bridge.log",
            "console_output": True
        }
    }
