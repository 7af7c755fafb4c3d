from enum import Enum


class ModuleType(str, Enum):
    GENERIC = "generic"
    CONGLOMERATE = "conglomerate"
    DATASTORE = "datastore"
    MESSAGE = "message"
    PROMISE = "promise"
    TRANSACTION = "transaction"
    WEB_FRAMEWORK = "web-framework"


SHIM_INSTRUMENTOR = "apptrace_shim"

# Env variables read by load_config()
ENABLED_ENV_NAME = "APPTRACE_SHIM_ENABLED"
NEST_TRANSACTIONS_ENV_NAME = "APPTRACE_SHIM_NEST_TRANSACTIONS"
RECORD_SQL_ENV_NAME = "APPTRACE_SHIM_RECORD_SQL"
MAX_SEGMENTS_ENV_NAME = "APPTRACE_SHIM_MAX_SEGMENTS"
MAX_DIAGNOSTICS_ENV_NAME = "APPTRACE_SHIM_MAX_DIAGNOSTICS"
LOG_LEVEL_ENV_NAME = "APPTRACE_SHIM_LOG_LEVEL"

RECORD_SQL_OBFUSCATED = "obfuscated"
RECORD_SQL_RAW = "raw"
RECORD_SQL_OFF = "off"
RECORD_SQL_MODES = (RECORD_SQL_OBFUSCATED, RECORD_SQL_RAW, RECORD_SQL_OFF)

# Transaction types
TRANSACTION_TYPE_WEB = "web"
TRANSACTION_TYPE_BG = "bg"
TRANSACTION_TYPE_MESSAGE = "message"

TRANSACTION_PREFIXES = {
    TRANSACTION_TYPE_WEB: "WebTransaction",
    TRANSACTION_TYPE_BG: "OtherTransaction",
    TRANSACTION_TYPE_MESSAGE: "OtherTransaction",
}

TOTAL_TIME_PREFIXES = {
    TRANSACTION_TYPE_WEB: "WebTransactionTotalTime",
    TRANSACTION_TYPE_BG: "OtherTransactionTotalTime",
    TRANSACTION_TYPE_MESSAGE: "OtherTransactionTotalTime",
}

UNKNOWN_ROUTE = "(not found)"

# Segment name prefixes
DATASTORE_STATEMENT_PREFIX = "Datastore/statement"
DATASTORE_OPERATION_PREFIX = "Datastore/operation"
MESSAGE_BROKER_PREFIX = "MessageBroker"
MESSAGE_TRANSACTION_PREFIX = "Message"
MIDDLEWARE_PREFIX = "Python/Middleware"
VIEW_PREFIX = "View"
CUSTOM_PREFIX = "Custom"

# Agent environment keys
ENV_FRAMEWORK = "Framework"
ENV_DATASTORE = "Datastore"
ENV_MESSAGING = "Messaging"

# Diagnostic kinds
DIAGNOSTIC_MISUSE = "misuse"
DIAGNOSTIC_INSTRUMENTATION_ERROR = "instrumentation_error"

# Segment/span attribute keys
DB_SYSTEM = "db.system"
DB_OPERATION = "db.operation"
DB_COLLECTION = "db.collection"
DB_STATEMENT = "db.statement"
DB_NAME = "db.name"
PEER_HOSTNAME = "peer.hostname"
PEER_PORT = "peer.port"
MESSAGING_SYSTEM = "messaging.system"
MESSAGING_DESTINATION = "messaging.destination"
MESSAGING_DESTINATION_KIND = "messaging.destination_kind"
MESSAGING_ROUTING_KEY = "messaging.routing_key"
MESSAGING_OPERATION = "messaging.operation"
HTTP_METHOD = "http.method"
HTTP_ROUTE = "http.route"
REQUEST_URI = "request.uri"
MODULE_NAME_KEY = "code.module"
TRUNCATED_KEY = "segment.truncated"
TRANSACTION_NAME_KEY = "transaction.name"

DATASTORE_NAMES = {
    "CASSANDRA": "Cassandra",
    "DYNAMODB": "DynamoDB",
    "ELASTICSEARCH": "ElasticSearch",
    "MEMCACHED": "Memcached",
    "MONGODB": "MongoDB",
    "MYSQL": "MySQL",
    "NEPTUNE": "Neptune",
    "OPENSEARCH": "OpenSearch",
    "POSTGRES": "Postgres",
    "REDIS": "Redis",
    "SQLITE": "SQLite",
}

DESTINATION_TYPE_EXCHANGE = "Exchange"
DESTINATION_TYPE_QUEUE = "Queue"
DESTINATION_TYPE_TOPIC = "Topic"
DESTINATION_TYPES = (DESTINATION_TYPE_EXCHANGE, DESTINATION_TYPE_QUEUE, DESTINATION_TYPE_TOPIC)

MIDDLEWARE_TYPE_MIDDLEWARE = "MIDDLEWARE"
MIDDLEWARE_TYPE_ROUTE = "ROUTE"
MIDDLEWARE_TYPE_ERRORWARE = "ERRORWARE"
MIDDLEWARE_TYPE_PARAMWARE = "PARAMWARE"
