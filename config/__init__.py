from .config_loader import config
from .utils import get_config_section, resolve_section

__all__ = ['config', 'get_config_section', 'resolve_section']
