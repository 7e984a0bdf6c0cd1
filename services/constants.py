# services/constants.py
"""
Static vocabularies for the sales pipeline: people, departments, stages and
the column alias tables used when mapping CSV exports onto the canonical
deal/task shape.

Everything here is built once at import time and exposed read-only.
"""
from types import MappingProxyType
from typing import Dict, Tuple

UNKNOWN = "—"
UNKNOWN_PERSON = "Неизвестно"
DEFAULT_CURRENCY = "RUB"
DEFAULT_AMOUNT = "0"

OP_GROUP: Tuple[str, ...] = (
    "Аблай Каракожаев",
    "Адиль Аманов",
    "Асан Тортаев",
    "Кристина Гайдар",
    "Мадина Абатова",
    "Арслан Мурат",
    "Азамат Байкуатов",
    "Акбота Кудайбергенова",
    "Асылбек",
    "Темірлан Мәкен",
    "Наталья Клюшина",
    "Александр Лукерин",
)

MPO_GROUP: Tuple[str, ...] = (
    "Александр Венедиктов",
    "Диана Джакупова",
    "Дмитрий Коваль",
    "Евгений Николаев",
    "Елена Зинкина",
    "Леонид Крупин",
    "Максат Садвакасов",
    "Нургуль Олжабаева",
    "Нурсулу Бопишева",
    "Татьяна Чибурун",
    "Фариза Темирбекова",
)

STAGE_ORDER: Tuple[str, ...] = (
    "Новая",
    "В работе",
    "Выдано проектировщику",
    "В экспертизе",
    "Экспертиза пройдена",
    "Идет тендер",
    "Сбор данных/подготовка ТКП",
    "ТКП отправлено",
    "ТКП согласовано",
    "Договор на согласовании",
    "Договор подписан",
    "Производство",
    "Отгружено",
    "ШМ и ПН",
)

DEPARTMENTS = MappingProxyType({
    "Эколос Алматы": (
        "Аблай Каракожаев",
        "Адиль Аманов",
        "Асан Тортаев",
        "Кристина Гайдар",
        "Мадина Абатова",
        "Арслан Мурат",
    ),
    "ЗИО Ecolos": (
        "Азамат Байкуатов",
        "Акбота Кудайбергенова",
        "Асылбек",
        "Темірлан Мәкен",
        "Наталья Клюшина",
    ),
    "Ecolos Engineering": MPO_GROUP,
})


def _build_dept_by_person() -> Dict[str, str]:
    # A person listed under two departments ends up in the last one, in table order.
    mapping: Dict[str, str] = {}
    for department, people in DEPARTMENTS.items():
        for person in people:
            mapping[person] = department
    return mapping


DEPT_BY_PERSON = MappingProxyType(_build_dept_by_person())
KNOWN_PEOPLE: Tuple[str, ...] = OP_GROUP + MPO_GROUP

# Normalized spelling variant (lowercase, letters and digits only) -> canonical stage.
CANON_STAGES = MappingProxyType({
    "новая": "Новая",
    "new": "Новая",
    "вработе": "В работе",
    "inprogress": "В работе",
    "выданопроектировщику": "Выдано проектировщику",
    "project": "Выдано проектировщику",
    "вэкспертизе": "В экспертизе",
    "экспертиза": "В экспертизе",
    "экспертизапройдена": "Экспертиза пройдена",
    "passedexpertise": "Экспертиза пройдена",
    "идеттендер": "Идет тендер",
    "тендер": "Идет тендер",
    "сборданныхподготовкаткп": "Сбор данных/подготовка ТКП",
    "предв": "Сбор данных/подготовка ТКП",
    "ткпотправлено": "ТКП отправлено",
    "отправленоткп": "ТКП отправлено",
    "ткпсогласовано": "ТКП согласовано",
    "согласованоткп": "ТКП согласовано",
    "договорнасогласовании": "Договор на согласовании",
    "согласованиедоговора": "Договор на согласовании",
    "договорподписан": "Договор подписан",
    "подписандоговор": "Договор подписан",
    "производство": "Производство",
    "отгружено": "Отгружено",
    "shipment": "Отгружено",
    "шмипн": "ШМ и ПН",
    "шмишмпн": "ШМ и ПН",
    "шмпн": "ШМ и ПН",
})

# (canonical key, aliases) pairs; aliases are lowercase substrings of a source column name.
DEAL_COLUMN_ALIASES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("dealId", ("id", "id сделки", "deal id", "номер", "ид", "код", "deal")),
    ("responsible", (
        "ответственный",
        "менеджер",
        "сотрудник",
        "ответственный менеджер",
        "owner",
        "responsible",
        "manager",
        "assignee",
        "мпо ответственный",
    )),
    ("stage", ("стадия", "стадия сделки", "этап", "статус", "status", "stage", "pipeline")),
    ("createdAt", (
        "дата создания",
        "создана",
        "created",
        "date created",
        "создание",
        "create time",
        "created at",
    )),
    ("modifiedAt", (
        "дата изменения",
        "изменена",
        "updated",
        "date updated",
        "обновление",
        "update time",
        "updated at",
        "modified",
    )),
)

TASK_COLUMN_ALIASES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("id", ("id", "ид", "номер", "task id", "key")),
    ("creator", ("постановщик", "creator", "created by", "автор")),
    ("assignee", ("исполнитель", "assignee", "ответственный")),
    ("status", ("статус", "status")),
    ("title", ("название", "тема", "задача", "title", "summary")),
    ("createdAt", ("дата создания", "создан", "created")),
    ("closedAt", ("дата закрытия", "закрыт", "closed", "completed")),
)

# Canonical key -> display label used by CSV exports and the dashboard.
DEAL_LABELS = MappingProxyType({
    "dealId": "ID сделки",
    "title": "Название",
    "responsible": "Ответственный",
    "stage": "Стадия сделки",
    "createdAt": "Дата создания",
    "modifiedAt": "Дата изменения",
    "department": "Отдел",
    "amount": "Сумма",
    "currency": "Валюта",
    "company": "Компания",
    "contact": "Контакт",
    "comments": "Комментарии",
    "beginDate": "Дата начала",
    "closeDate": "Дата закрытия",
    "dealType": "Тип",
    "probability": "Вероятность",
    "source": "Источник",
})

TASK_LABELS = MappingProxyType({
    "id": "ID",
    "title": "Название",
    "creator": "Постановщик",
    "assignee": "Исполнитель",
    "status": "Статус",
    "priority": "Приоритет",
    "createdAt": "Дата создания",
    "closedAt": "Дата закрытия",
    "description": "Описание",
})

# Extra fallback keys tried after the display label when no alias matched.
DEAL_FALLBACK_KEYS = MappingProxyType({
    "dealId": ("ID", "ID сделки"),
    "responsible": ("Ответственный", "МПО Ответственный"),
    "stage": ("Стадия сделки",),
    "createdAt": ("Дата создания",),
    "modifiedAt": ("Дата изменения",),
})

MONTHS_SHORT: Tuple[str, ...] = (
    "Янв", "Фев", "Мар", "Апр", "Май", "Июн",
    "Июл", "Авг", "Сен", "Окт", "Ноя", "Дек",
)
