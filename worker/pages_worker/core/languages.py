"""Interface languages the crawler can request through the locale cookie."""

LANGUAGES = {
    "cs-CZ": "Čeština",
    "da-DK": "Dansk",
    "de-DE": "Deutsch",
    "en-GB": "English (UK)",
    "en-US": "English (US)",
    "es-ES": "Español (España)",
    "es-LA": "Español",
    "fr-CA": "Français (Canada)",
    "fr-FR": "Français (France)",
    "id-ID": "Bahasa Indonesia",
    "it-IT": "Italiano",
    "ja-JP": "日本語",
    "ko-KR": "한국어",
    "nl-NL": "Nederlands",
    "pl-PL": "Polski",
    "pt-BR": "Português (Brasil)",
    "pt-PT": "Português (Portugal)",
    "ru-RU": "Русский",
    "sk-SK": "Slovenčina",
    "sv-SE": "Svenska",
    "th-TH": "ภาษาไทย",
    "tr-TR": "Türkçe",
    "vi-VN": "Tiếng Việt",
    "zh-CN": "中文(简体)",
    "zh-TW": "中文(台灣)",
}


def locale_cookie_value(language: str) -> str:
    return language.replace("-", "_")
