import os

from dotenv import load_dotenv

load_dotenv()

# OpenAI (Azure deployments are used when an endpoint is configured)
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-5-mini")
AZURE_OPENAI_ENDPOINT = os.environ.get("AZURE_OPENAI_ENDPOINT")
AZURE_OPENAI_KEY = os.environ.get("AZURE_OPENAI_KEY")
AZURE_OPENAI_API_VERSION = os.environ.get("AZURE_OPENAI_API_VERSION")

# ClickHouse HTTP interface
CLICKHOUSE_URL = os.environ.get("CLICKHOUSE_URL", "http://localhost:8123")
CLICKHOUSE_USER = os.environ.get("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.environ.get("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.environ.get("CLICKHOUSE_DATABASE")
CLICKHOUSE_TABLE = os.environ.get("CLICKHOUSE_TABLE", "github_events")
CLICKHOUSE_TIMEOUT = int(os.environ.get("CLICKHOUSE_TIMEOUT", "45"))
MAX_RESULT_ROWS = int(os.environ.get("MAX_RESULT_ROWS", "10000"))
MAX_EXECUTION_TIME = int(os.environ.get("MAX_EXECUTION_TIME", "30"))

# Pipeline
MAX_ATTEMPTS = int(os.environ.get("MAX_ATTEMPTS", "3"))
EVAL_CONCURRENCY = int(os.environ.get("EVAL_CONCURRENCY", "4"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
