from .config_loader import Config, SectionProxy, config as config
from .utils import get_config_section

__all__ = ['config', 'Config', 'SectionProxy', 'get_config_section']
