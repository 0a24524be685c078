"""配置层：内置默认值 + YAML overlays + sidecar 环境变量。"""

from coding_executor.config.defaults import load_default_config_dict
from coding_executor.config.loader import CodingExecutorConfig, SidecarSettings, load_config, load_config_dicts

__all__ = [
    "CodingExecutorConfig",
    "SidecarSettings",
    "load_config",
    "load_config_dicts",
    "load_default_config_dict",
]
