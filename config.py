"""
Central configuration for sarah-otp.
Avoids hardcoded literals spread across files.
"""
import os

# Codec
MAX_KEY_LENGTH = 50000
ARMOR_LABEL = "OTP"
ARMOR_LINE_LENGTH = 64

# Networking
DEFAULT_HTTPS_PORT = 443
STOP_TIMEOUT = 5.0  # seconds allowed for in-flight requests during stop
# Idle connections give up before the stop deadline so they cannot hold it.
TLS_HANDSHAKE_TIMEOUT = 3.0
REQUEST_TIMEOUT = 3.0

# Environment variables read by the server when a flag is not given
ENV_VERSION_FILE = "VERSION_FILE"
ENV_HTTP_PORT = "HTTP_PORT"
ENV_HTTPS_PORT = "HTTPS_PORT"
ENV_PORT = "PORT"
ENV_TLS_CERT_FILE = "TLS_CERT_FILE"
ENV_TLS_KEY_FILE = "TLS_KEY_FILE"

DEFAULT_VERSION_FILE = "version"

# Resources
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
RESOURCES_DIR = os.path.join(BASE_DIR, "resources")
STATIC_DIR = os.path.join(BASE_DIR, "static")

# Application metadata rendered into the templates
APP_NAME = "Sarah-OTP"
APP_SHORT_NAME = "S-OTP"
APP_DESCRIPTION = "a secure message-passing app"
APP_THEME_COLOR = "purple"
APP_BACKGROUND_COLOR = "white"

# Encoding
DECODE_ERRORS = "replace"  # errors handling when showing decrypted text
