"""
User-facing message templates (HTML parse mode), per locale.
Core components pass a template key plus parameters; text lives only here.
Parameters are HTML-escaped; missing parameters are left as {placeholders}.
"""
import html

from convbot.core.config import settings


SUPPORTED_LOCALES = ("en", "ru")


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


_FILE_LINE = {
    "en": "📄 <b>File:</b> {name}",
    "ru": "📄 <b>Файл:</b> {name}",
}
_DEFAULT_FILE_NAME = {"en": "file", "ru": "файл"}

TEMPLATES: dict[str, dict[str, str]] = {
    "queue.already_queued": {
        "en": "⚠️ <b>Already queued</b>\n{file_line}",
        "ru": "⚠️ <b>Уже в очереди</b>\n{file_line}",
    },
    "queue.queued": {
        "en": "⏳ <b>In queue:</b> {position}\n{file_line}",
        "ru": "⏳ <b>В очереди:</b> {position}\n{file_line}",
    },
    "queue.started": {
        "en": "⚙️ <b>Conversion started</b>\n{file_line}",
        "ru": "⚙️ <b>Конвертация началась</b>\n{file_line}",
    },
    "queue.priority_suffix": {
        "en": "\n⚡ Queue: priority",
        "ru": "\n⚡ Очередь: приоритет",
    },
    "file.choose_format": {
        "en": "📥 <b>File received</b>\n{file_line}\n\nChoose the target format:",
        "ru": "📥 <b>Файл получен</b>\n{file_line}\n\nВыберите формат для конвертации:",
    },
    "batch.collecting": {
        "en": "📦 <b>Collecting files</b>\nIf you're sending a batch, keep sending.\nI'll wait a bit and then show conversion options.",
        "ru": "📦 <b>Собираю файлы</b>\nЕсли Вы отправляете пачку, продолжайте отправку.\nЯ подожду немного и затем предложу варианты конвертации.",
    },
    "batch.choice": {
        "en": "📦 <b>Batch</b>\nYou sent <b>{count}</b> files .{ext}.\n\nHow do you want to convert?",
        "ru": "📦 <b>Пакет файлов</b>\nВы отправили <b>{count}</b> файлов .{ext}.\n\nКак конвертировать?",
    },
    "batch.button_all": {
        "en": "🧩 One format for all",
        "ru": "🧩 Один формат для всех",
    },
    "batch.button_separate": {
        "en": "📄 Separately",
        "ru": "📄 По отдельности",
    },
    "batch.choose_format": {
        "en": "🧩 <b>One format for all</b>\nFiles: <b>{count}</b> .{ext}\n\nChoose format:",
        "ru": "🧩 <b>Один формат для всех</b>\nФайлов: <b>{count}</b> .{ext}\n\nВыберите формат:",
    },
    "batch.started": {
        "en": "✅ Conversions started: <b>{count}</b>\nYou will receive results as separate files.",
        "ru": "✅ Запущено конвертаций: <b>{count}</b>\nРезультаты придут отдельными файлами.",
    },
    "batch.count_accepted": {
        "en": "✅ OK. Waiting for <b>{count}</b> files.\nSend them now.",
        "ru": "✅ Ок. Жду <b>{count}</b> файлов.\nОтправьте их сейчас.",
    },
    "batch.timeout": {
        "en": "⏱ Timeout. Received files: <b>{got}</b> of <b>{expected}</b>.",
        "ru": "⏱ Таймер истёк. Получено файлов: <b>{got}</b> из <b>{expected}</b>.",
    },
    "error.cannot_detect_type": {
        "en": "🚫 <b>Couldn't detect file type</b>\n{file_line}",
        "ru": "🚫 <b>Не удалось определить тип файла</b>\n{file_line}",
    },
    "error.no_conversion_options": {
        "en": "🚫 <b>This file type is not supported yet</b>\n{file_line}",
        "ru": "🚫 <b>Конвертация для этого формата пока не поддерживается</b>\n{file_line}",
    },
    "error.conversion_failed": {
        "en": "🚫 <b>Conversion failed</b>\n{file_line}\n\n<code>{error}</code>",
        "ru": "🚫 <b>Ошибка конвертации</b>\n{file_line}\n\n<code>{error}</code>",
    },
    "credits.insufficient": {
        "en": "Not enough credits. Remaining {remaining}/{cap}",
        "ru": "Недостаточно кредитов. Осталось {remaining}/{cap}",
    },
    "credits.remaining_line": {
        "en": "Remaining credits: {remaining}/{cap}",
        "ru": "Осталось кредитов: {remaining}/{cap}",
    },
    "credits.no_credits_hint": {
        "en": "You're out of credits. Wait for the next daily reset or get a subscription for unlimited conversions.",
        "ru": "Кредиты закончились. Дождитесь ежедневного обновления или оформите подписку с безлимитом.",
    },
    "plan.unlimited_line": {
        "en": "Plan: unlimited",
        "ru": "Тариф: безлимит",
    },
}


def normalize_locale(locale: str | None) -> str:
    locale = (locale or "").strip().lower()[:2]
    return locale if locale in SUPPORTED_LOCALES else settings.default_locale


def file_line(locale: str, file_name: str | None) -> str:
    locale = normalize_locale(locale)
    name = (file_name or "").strip() or _DEFAULT_FILE_NAME[locale]
    return _FILE_LINE[locale].format(name=html.escape(name))


def render(key: str, locale: str | None = None, file_name: str | None = None, **params) -> str:
    """
    Render template `key` for `locale`.
    Unknown keys render as the key itself so a missing template never breaks delivery.
    """
    locale = normalize_locale(locale)
    variants = TEMPLATES.get(key)
    if not variants:
        return key
    tpl = variants.get(locale) or variants["en"]
    values = {k: html.escape(str(v)) for k, v in params.items()}
    values["file_line"] = file_line(locale, file_name)
    values.setdefault("cap", str(settings.daily_credits))
    return tpl.format_map(_SafeDict(values))
