from modrewrite.core.config import RewriteConfig, load_config_from_file

__all__ = ["RewriteConfig", "load_config_from_file"]
