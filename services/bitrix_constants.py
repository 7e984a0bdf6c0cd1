# services/bitrix_constants.py
from types import MappingProxyType

# Static fallback used when crm.status.list is unavailable.
BITRIX_STAGE_MAPPING = MappingProxyType({
    "NEW": "Новая",
    "PREPARATION": "Сбор данных/подготовка ТКП",
    "PREPAYMENT_INVOICE": "ТКП отправлено",
    "EXECUTING": "В работе",
    "FINAL_INVOICE": "ТКП согласовано",
    "WON": "Договор подписан",
    "LOSE": "Сделка провалена",
    "APOLOGY": "Анализ причины провала",
    "C1:NEW": "Новая",
    "C1:PREPARATION": "Сбор данных/подготовка ТКП",
    "C1:PREPAYMENT_INVOICE": "ТКП отправлено",
    "C1:EXECUTING": "В работе",
    "C1:FINAL_INVOICE": "ТКП согласовано",
    "C1:WON": "Договор подписан",
    "C1:LOSE": "Сделка провалена",
    "C1:UC_DZ4HAS": "Договор на согласовании",
    "C1:UC_55KDZG": "Выдано проектировщику",
    "C1:UC_UGT6PW": "В экспертизе",
    "C1:UC_XMGQ14": "Экспертиза пройдена",
    "C1:UC_ZRMBG8": "Идет тендер",
    "C1:UC_GWWM7C": "Производство",
    "C1:UC_5ZZJBY": "Отгружено",
    "C1:UC_W8XFJK": "ШМ и ПН",
})

TASK_STATUS_MAPPING = MappingProxyType({
    "1": "Новая",
    "2": "В работе",
    "3": "Ждет выполнения",
    "4": "Завершена (требуется контроль)",
    "5": "Завершена",
    "6": "Отложена",
    "7": "Отклонена",
})

TASK_PRIORITY_MAPPING = MappingProxyType({
    "0": "Низкий",
    "1": "Обычный",
    "2": "Высокий",
})

PAGE_SIZE = 50
LOOKUP_CHUNK_SIZE = 50

DEAL_SELECT = ("*", "UF_*")

TASK_FIELDS = (
    "ID",
    "TITLE",
    "STATUS",
    "CREATED_BY",
    "RESPONSIBLE_ID",
    "CREATED_DATE",
    "CLOSED_DATE",
    "DESCRIPTION",
    "PRIORITY",
)

CONTACT_FIELDS = ("ID", "NAME", "LAST_NAME", "COMPANY_TITLE")
COMPANY_FIELDS = ("ID", "TITLE", "COMPANY_TYPE")

MAX_TASK_DESCRIPTION_LENGTH = 100

# Bitrix entityTypeId for deals (crm.category.list).
DEAL_ENTITY_TYPE_ID = 2

# Prefixes used by "crm" type user fields: C_12 is a contact, CO_7 a company.
CONTACT_REF_PREFIX = "C_"
COMPANY_REF_PREFIX = "CO_"
