from autofetch.config.loader import YamlConfigLoader
from autofetch.config.models import AppConfig, ConfigLoadRequest

__all__ = ["AppConfig", "ConfigLoadRequest", "YamlConfigLoader"]
