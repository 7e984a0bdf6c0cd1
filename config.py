class Config:
    DEBUG = False
    TESTING = False
    EXPORT_ROOT_SUBDIR = "exports"
    MAX_CONTENT_LENGTH = 20 * 1024 * 1024
    CONFIG_JSON_PATH = "config.json"

    TIMEZONE = "Asia/Almaty"

    BITRIX_PAGE_SIZE = 50
    BITRIX_LOOKUP_CHUNK_SIZE = 50
    BITRIX_TIMEOUT = 30
    BITRIX_SALES_CATEGORY_NAME = "продаж"
    BITRIX_FALLBACK_CATEGORY_ID = 1

    SNAPSHOT_LOCAL_LIMIT = 10
    SNAPSHOT_KEEP = 100


class ProductionConfig(Config):
    pass


class DevelopmentConfig(Config):
    DEBUG = True


class TestingConfig(Config):
    TESTING = True
    DEBUG = True
