from typing import Optional, Dict, Any
import os
from dotenv import load_dotenv
from rich.console import Console
from rich.prompt import Prompt
import keyring
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

console = Console()

KEYRING_SERVICE = 'careiq-calendar'

CONFLICT_POLICIES = ('external_wins', 'local_wins', 'manual')


class ConfigManager:
    """Manage application configuration and environment variables"""

    def __init__(self, env_file: str = None):
        """Initialize config manager"""
        if env_file:
            self.env_file = env_file
        else:
            # Project root is two levels up from this file
            project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
            self.env_file = os.path.join(project_root, '.env')
            logger.debug(f"Looking for .env file at: {self.env_file}")

        self.config = {}
        self.load_config()

    def load_config(self):
        """Load configuration from environment and .env file"""
        if os.path.exists(self.env_file):
            logger.info(f"Loading environment variables from {self.env_file}")
            load_dotenv(self.env_file, override=True)

        self.config['app'] = self._load_app_config()
        self.config['google'] = self._load_google_config()
        self.config['outlook'] = self._load_outlook_config()
        self.config['apple'] = self._load_apple_config()
        self.config['sync'] = self._load_sync_config()
        self.config['development'] = self._load_dev_config()

    def _load_app_config(self) -> Dict[str, Any]:
        """Load application settings"""
        default_db = os.path.expanduser('~/.careiq/calendar_sync.db')
        zone = os.getenv('TIMEZONE', 'UTC')
        try:
            ZoneInfo(zone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown TIMEZONE '{zone}', falling back to UTC")
            zone = 'UTC'
        return {
            'timezone': zone,
            'database_url': os.getenv('DATABASE_URL', f'sqlite:///{default_db}'),
            'http_timeout': float(os.getenv('HTTP_TIMEOUT', 30)),
        }

    def _load_google_config(self) -> Dict[str, Any]:
        """Load Google Calendar OAuth client settings"""
        return {
            'client_id': os.getenv('GOOGLE_CALENDAR_CLIENT_ID') or self._get_secret('google_client_id'),
            'client_secret': os.getenv('GOOGLE_CALENDAR_CLIENT_SECRET') or self._get_secret('google_client_secret'),
            'redirect_uri': os.getenv('GOOGLE_CALENDAR_REDIRECT_URI'),
        }

    def _load_outlook_config(self) -> Dict[str, Any]:
        """Load Microsoft Graph OAuth client settings"""
        return {
            'client_id': os.getenv('OUTLOOK_CALENDAR_CLIENT_ID') or self._get_secret('outlook_client_id'),
            'client_secret': os.getenv('OUTLOOK_CALENDAR_CLIENT_SECRET') or self._get_secret('outlook_client_secret'),
            'redirect_uri': os.getenv('OUTLOOK_CALENDAR_REDIRECT_URI'),
            'authority': os.getenv('OUTLOOK_CALENDAR_AUTHORITY', 'https://login.microsoftonline.com/common'),
        }

    def _load_apple_config(self) -> Dict[str, Any]:
        return {
            'caldav_url': os.getenv('APPLE_CALDAV_URL', 'https://caldav.icloud.com'),
        }

    def _load_sync_config(self) -> Dict[str, Any]:
        """Load sync window and conflict settings"""
        policy = os.getenv('CONFLICT_POLICY', 'external_wins').lower()
        if policy not in CONFLICT_POLICIES:
            logger.warning(f"Unknown CONFLICT_POLICY '{policy}', falling back to external_wins")
            policy = 'external_wins'
        return {
            'past_days': int(os.getenv('SYNC_PAST_DAYS', 30)),
            'future_days': int(os.getenv('SYNC_FUTURE_DAYS', 180)),
            'max_results': int(os.getenv('SYNC_MAX_RESULTS', 500)),
            'conflict_policy': policy,
        }

    def _load_dev_config(self) -> Dict[str, Any]:
        """Load development settings"""
        return {
            'debug': self._parse_bool(os.getenv('DEBUG', 'false')),
            'log_level': os.getenv('LOG_LEVEL', 'INFO').upper()
        }

    def _parse_bool(self, value: str) -> bool:
        """Parse string boolean value"""
        return str(value).lower() in ('true', '1', 'yes', 'on')

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value"""
        parts = key.split('.')
        value = self.config
        for part in parts:
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return default
        return value if value is not None else default

    def set(self, key: str, value: Any):
        """Override a configuration value in memory"""
        section, _, name = key.partition('.')
        self.config.setdefault(section, {})[name] = value

    def validate(self, providers=('google', 'outlook')) -> bool:
        """Validate the OAuth client configuration for the given providers"""
        missing = []
        for provider in providers:
            for field in ('client_id', 'client_secret', 'redirect_uri'):
                if not self.get(f'{provider}.{field}'):
                    missing.append(f"- {provider}.{field}: required for {provider} authorization")

        if missing:
            console.print("[bold red]Missing Required Configuration:[/bold red]")
            for msg in missing:
                console.print(msg)
            return False

        return True

    def setup_wizard(self):
        """Interactive setup wizard for OAuth client secrets"""
        console.print("[bold blue]CareIQ Calendar Sync Setup Wizard[/bold blue]")
        console.print("Client secrets are stored in the system keyring.\n")

        for provider, label in (('google', 'Google Calendar'), ('outlook', 'Microsoft Outlook')):
            console.print(f"\n[bold cyan]{label} Configuration[/bold cyan]")
            client_id = Prompt.ask(f"Enter your {label} client ID", default='')
            client_secret = Prompt.ask(f"Enter your {label} client secret", password=True, default='')
            if client_id and client_secret:
                self._save_secret(f'{provider}_client_id', client_id)
                self._save_secret(f'{provider}_client_secret', client_secret)

        if not os.path.exists(self.env_file):
            self._create_env_file()

        self.load_config()

        console.print("\n[bold green]Setup complete! Configuration has been saved.[/bold green]")

    def _save_secret(self, key: str, value: str):
        """Save secret to system keyring"""
        if value:
            keyring.set_password(KEYRING_SERVICE, key, value)

    def _get_secret(self, key: str) -> Optional[str]:
        """Get secret from system keyring"""
        try:
            return keyring.get_password(KEYRING_SERVICE, key)
        except Exception as e:
            logger.debug(f"Keyring lookup for {key} failed: {e}")
            return None

    def _create_env_file(self):
        """Create .env file with non-sensitive settings"""
        env_content = """# Application Settings
TIMEZONE=UTC
DATABASE_URL=sqlite:///calendar_sync.db
HTTP_TIMEOUT=30

# Provider OAuth redirect URIs
GOOGLE_CALENDAR_REDIRECT_URI=http://localhost:8000/calendar/google/callback
OUTLOOK_CALENDAR_REDIRECT_URI=http://localhost:8000/calendar/outlook/callback
APPLE_CALDAV_URL=https://caldav.icloud.com

# Sync Settings
SYNC_PAST_DAYS=30
SYNC_FUTURE_DAYS=180
SYNC_MAX_RESULTS=500
CONFLICT_POLICY=external_wins

# Development Settings
DEBUG=false
LOG_LEVEL=INFO"""

        with open(self.env_file, 'w') as f:
            f.write(env_content)

    def ensure_directories(self):
        """Ensure the SQLite database directory exists"""
        url = self.get('app.database_url', '')
        if url.startswith('sqlite:///'):
            path = os.path.dirname(url[len('sqlite:///'):])
            if path:
                os.makedirs(os.path.expanduser(path), exist_ok=True)

    def get_oauth_config(self, provider: str) -> Dict[str, Any]:
        """Get the OAuth client settings for a provider"""
        return dict(self.config.get(provider, {}))
