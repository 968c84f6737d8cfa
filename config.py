import os
import json
import time
import tempfile

def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        print(f"⚠️  Ignoring invalid integer for {name}: {value!r}")
        return default

def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')

# Server configuration
PORT = _env_int('PORT', 5000)
HOST = os.environ.get('HOST', '0.0.0.0')  # Listen on all interfaces
SESSION_SECRET = os.environ.get('SESSION_SECRET', 'change_this_secret_in_production')
PERMANENT_SESSION_LIFETIME = _env_int('PERMANENT_SESSION_LIFETIME', 3600)  # 1 hour session timeout
MAX_CONTENT_LENGTH = 16 * 1024 * 1024 * 1024  # 16GB max direct upload
CORS_ORIGINS = [o.strip() for o in os.environ.get(
    'CORS_ORIGINS', 'http://localhost:5173,http://localhost:3000').split(',') if o.strip()]

# Upload / streaming sizes
CHUNK_SIZE = 10 * 1024 * 1024  # 10 MB max per chunk request
RANGE_CHUNK_SIZE = 4 * 1024 * 1024  # 4 MB max span per range response
STREAM_BLOCK_SIZE = 64 * 1024

# Chunk assembly: 'local' (scratch disk) or 'remote' (append on FTP, no persistent disk)
ASSEMBLY_MODE = os.environ.get('ASSEMBLY_MODE', 'local').strip().lower()
SCRATCH_DIR = os.environ.get('SCRATCH_DIR') or os.path.join(tempfile.gettempdir(), 'scribestore-chunks')
CHUNK_MAX_AGE = _env_int('CHUNK_MAX_AGE', 3600)  # 1 hour
CHUNK_CLEANUP_INTERVAL = _env_int('CHUNK_CLEANUP_INTERVAL', 600)  # 10 minutes

# Remote store (FTPS)
FTP_HOST = os.environ.get('FTP_HOST', '')
FTP_USER = os.environ.get('FTP_USER', '')
FTP_PASS = os.environ.get('FTP_PASS', '')
FTP_TLS_MODE = os.environ.get('FTP_TLS_MODE', 'explicit').strip().lower()  # explicit | implicit | none
FTP_PORT = _env_int('FTP_PORT', 990 if FTP_TLS_MODE == 'implicit' else 21)
FTP_TLS_VERIFY = _env_bool('FTP_TLS_VERIFY', True)
FTP_BASE_PATH = os.environ.get('FTP_BASE_PATH', 'uploads')
FTP_TIMEOUT = _env_int('FTP_TIMEOUT', 60)

# Metadata + users
METADATA_DB_PATH = os.environ.get('METADATA_DB_PATH', 'metadata.json')
USERS_FILE = os.environ.get('USERS_FILE', 'users.json')

# Reconciliation sweep
SYNC_INTERVAL = _env_int('SYNC_INTERVAL', 60)
SYNC_INITIAL_DELAY = _env_int('SYNC_INITIAL_DELAY', 5)
SYNC_BATCH_SIZE = _env_int('SYNC_BATCH_SIZE', 20)

# URL import
URL_FETCH_TIMEOUT = _env_int('URL_FETCH_TIMEOUT', 60)

def setup_scratch_directory():
    """Create and verify the local scratch directory used for chunk assembly"""
    global SCRATCH_DIR
    try:
        os.makedirs(SCRATCH_DIR, exist_ok=True)

        # Test write permissions
        test_file = os.path.join(SCRATCH_DIR, '.write_test')
        with open(test_file, 'w') as f:
            f.write('test')
        os.remove(test_file)
        return SCRATCH_DIR
    except OSError as e:
        fallback = os.path.join(tempfile.gettempdir(), 'scribestore-chunks')
        print(f"❌ Scratch directory {SCRATCH_DIR} unusable ({e}), falling back to {fallback}")
        os.makedirs(fallback, exist_ok=True)
        SCRATCH_DIR = fallback
        return fallback

def format_bytes(bytes):
    """Format bytes into human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes < 1024:
            return f"{bytes:.1f} {unit}"
        bytes /= 1024
    return f"{bytes:.1f} PB"

def save_server_config(path='server_config.json'):
    """Save server configuration to file"""
    config_data = {
        'PORT': PORT,
        'HOST': HOST,
        'SESSION_SECRET': SESSION_SECRET,
        'PERMANENT_SESSION_LIFETIME': PERMANENT_SESSION_LIFETIME,
        'ASSEMBLY_MODE': ASSEMBLY_MODE,
        'SCRATCH_DIR': SCRATCH_DIR,
        'FTP_BASE_PATH': FTP_BASE_PATH,
        'SYNC_INTERVAL': SYNC_INTERVAL,
        'SYNC_BATCH_SIZE': SYNC_BATCH_SIZE,
        'configured_at': time.strftime('%Y-%m-%d %H:%M:%S')
    }

    try:
        with open(path, 'w') as f:
            json.dump(config_data, f, indent=2)
        print(f"✅ Server configuration saved to {path}")
        return True
    except OSError as e:
        print(f"❌ Error saving configuration: {e}")
        return False

def load_server_config(path='server_config.json'):
    """Load server configuration from file; environment variables still win"""
    global PORT, HOST, SESSION_SECRET, PERMANENT_SESSION_LIFETIME
    global ASSEMBLY_MODE, SCRATCH_DIR, FTP_BASE_PATH, SYNC_INTERVAL, SYNC_BATCH_SIZE

    if not os.path.exists(path):
        return False

    try:
        with open(path, 'r') as f:
            config = json.load(f)
    except (OSError, ValueError) as e:
        print(f"⚠️ Could not load server config: {e}")
        return False

    def pick(key, current):
        if key in os.environ:
            return current
        return config.get(key, current)

    PORT = pick('PORT', PORT)
    HOST = pick('HOST', HOST)
    SESSION_SECRET = pick('SESSION_SECRET', SESSION_SECRET)
    PERMANENT_SESSION_LIFETIME = pick('PERMANENT_SESSION_LIFETIME', PERMANENT_SESSION_LIFETIME)
    ASSEMBLY_MODE = pick('ASSEMBLY_MODE', ASSEMBLY_MODE)
    SCRATCH_DIR = pick('SCRATCH_DIR', SCRATCH_DIR)
    FTP_BASE_PATH = pick('FTP_BASE_PATH', FTP_BASE_PATH)
    SYNC_INTERVAL = pick('SYNC_INTERVAL', SYNC_INTERVAL)
    SYNC_BATCH_SIZE = pick('SYNC_BATCH_SIZE', SYNC_BATCH_SIZE)

    print(f"✅ Server configuration loaded from {path}")
    return True

def print_config_info():
    """Print the effective configuration (secrets omitted)"""
    print(f"🌐 Listening on {HOST}:{PORT}")
    print(f"📡 FTP host: {FTP_HOST or '(not configured)'} (TLS: {FTP_TLS_MODE}, port {FTP_PORT})")
    print(f"📁 FTP base path: {FTP_BASE_PATH}")
    print(f"🔧 Assembly mode: {ASSEMBLY_MODE}")
    print(f"📦 Max chunk size: {format_bytes(CHUNK_SIZE)}")
    if ASSEMBLY_MODE == 'local':
        print(f"🗂️  Scratch directory: {SCRATCH_DIR}")
    print(f"🔄 Reconciliation: every {SYNC_INTERVAL}s, {SYNC_BATCH_SIZE} records per cycle")
