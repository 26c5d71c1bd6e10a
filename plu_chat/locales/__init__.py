"""面向用户的提示文本。

按语言(locale) 从 locales 目录读取 ``<locale>.yaml``，
用于构造错误回复、校验提示等展示给用户的消息。
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from plu_chat.config.settings import settings


LOCALES_DIR = Path(__file__).resolve().parent
DEFAULT_LOCALE = "fr"


@lru_cache(maxsize=None)
def load_locale(locale: str) -> Dict[str, str]:
    """加载某个语言的文本表；未知语言回退到法语。"""

    path = LOCALES_DIR / f"{locale}.yaml"
    if not path.exists():
        path = LOCALES_DIR / f"{DEFAULT_LOCALE}.yaml"
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return {str(k): str(v) for k, v in data.items()}


def t(key: str, locale: Optional[str] = None, **params: Any) -> str:
    texts = load_locale(locale or getattr(settings, "locale", DEFAULT_LOCALE))
    template = texts.get(key) or load_locale(DEFAULT_LOCALE).get(key, key)
    return template.format(**params) if params else template
