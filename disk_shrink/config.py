"""Configuration loading: config.yaml, .env.secret and command line overrides"""

import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = 'config.yaml'
DEFAULT_SECRETS_FILE = '.env.secret'


def load_secrets(secret_file: str = DEFAULT_SECRETS_FILE) -> Dict[str, Optional[str]]:
    """Load secrets from .env.secret file"""
    if os.path.exists(secret_file):
        load_dotenv(secret_file)
    else:
        logger.warning(f"{secret_file} not found. Storage key will be fetched from Azure.")
    return {
        'storage_account_key': os.getenv('STORAGE_ACCOUNT_KEY'),
    }


def load_config(config_file: str = DEFAULT_CONFIG_FILE) -> Dict:
    """Load configuration from config.yaml file"""
    if os.path.exists(config_file):
        with open(config_file, 'r') as f:
            return yaml.safe_load(f) or {}
    logger.warning(f"{config_file} not found. Using default configuration.")
    return {}


@dataclass
class ShrinkConfig:
    """OS disk shrink parameters"""
    resource_group: str = None
    vm_name: str = None
    new_size_gb: int = None
    storage_account: str = None
    storage_resource_group: str = None
    container: str = None
    sas_duration: int = None
    copy_timeout: int = None
    copy_poll_interval: int = None
    footer_retries: int = None
    start_vm: bool = None
    cleanup_on_failure: bool = None
    keep_blob: bool = None
    storage_account_key: str = None
    tags: Dict[str, str] = None
    config_file: str = DEFAULT_CONFIG_FILE
    secrets_file: str = DEFAULT_SECRETS_FILE

    def __post_init__(self):
        config_data = load_config(self.config_file)
        secrets_data = load_secrets(self.secrets_file)

        self.resource_group = self.resource_group or config_data.get('resource_group')
        self.vm_name = self.vm_name or config_data.get('vm_name')
        self.new_size_gb = self.new_size_gb or config_data.get('new_size_gb')
        self.storage_account = self.storage_account or config_data.get('storage_account')
        self.storage_resource_group = (self.storage_resource_group
                                       or config_data.get('storage_resource_group')
                                       or self.resource_group)
        self.container = self.container or config_data.get('container', 'vhds')

        # Timing
        self.sas_duration = self.sas_duration or config_data.get('sas_duration', 3600)
        self.copy_timeout = self.copy_timeout or config_data.get('copy_timeout', 4 * 3600)
        self.copy_poll_interval = self.copy_poll_interval or config_data.get('copy_poll_interval', 30)
        self.footer_retries = (self.footer_retries if self.footer_retries is not None
                               else config_data.get('footer_retries', 3))

        # Behaviour switches
        self.start_vm = self.start_vm if self.start_vm is not None else config_data.get('start_vm', True)
        self.cleanup_on_failure = (self.cleanup_on_failure if self.cleanup_on_failure is not None
                                   else config_data.get('cleanup_on_failure', True))
        self.keep_blob = self.keep_blob if self.keep_blob is not None else config_data.get('keep_blob', False)

        self.storage_account_key = self.storage_account_key or secrets_data['storage_account_key']

        if self.tags is None:
            self.tags = config_data.get('tags', {'purpose': 'os-disk-shrink'})

    def missing_fields(self):
        """Names of required settings that are still unset"""
        required = ['resource_group', 'vm_name', 'new_size_gb', 'storage_account']
        return [name for name in required if not getattr(self, name)]
