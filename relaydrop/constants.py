"""relaydrop 项目使用的常量定义。"""

DEFAULT_CONFIG_FILE = "config.yaml"
DEFAULT_CONFIG_SAMPLE = "config.sample.yaml"
DEFAULT_RECEIVE_DIR = "data/received"
DEFAULT_CONTEXT = "file-transfer"
DEFAULT_KDF_ITERATIONS = 100_000
MIN_CODE_LENGTH = 8
ENVELOPE_VERSION = 1
