from config import DEFAULT_LANG, SUPPORTED_LANGS


def is_supported_lang(lang: str | None) -> bool:
    return bool(lang) and lang in SUPPORTED_LANGS


def select_language(lang: str | None) -> str:
    """Return `lang` if it is supported, otherwise the process default."""
    return lang if is_supported_lang(lang) else DEFAULT_LANG


def accept_language(lang: str) -> str:
    return "ja-JP,ja;q=0.9" if lang == "ja" else "en-US,en;q=0.9"
