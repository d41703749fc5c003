"""wdm - 去中心化的 WordPress 插件依赖管理器"""

__version__ = "0.1.0"
