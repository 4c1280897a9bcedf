APP_NAME = "TwosChat"
SCHEMA_VERSION = 1

TWOS_EXPORT_URL = "https://www.twosapp.com/apiV2/user/export"

# Entries per uploaded file.
CHUNK_SIZE = 50

KEY_OPENAI_ID = "openaiId"
KEY_TWOS_USER_ID = "twosUserId"
KEY_TWOS_TOKEN = "twosToken"
KEY_VECTOR_STORE_ID = "vectorStoreId"
KEY_ASSISTANT_ID = "assistantId"
KEY_FILE_IDS = "fileIds"
KEY_INDEX_CONFIG = "index_config"

STATUS_IDLE = "idle"
STATUS_SYNCING = "syncing"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
