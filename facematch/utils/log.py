"""日志配置"""

import logging

from facematch.config import LOG_LEVEL

logging.basicConfig(level=getattr(logging, str(LOG_LEVEL).upper(), logging.INFO))


def get_logger(name):
    """获取日志记录器"""
    logger = logging.getLogger(name)
    return logger
