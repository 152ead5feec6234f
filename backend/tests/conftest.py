import os
import tempfile

# Route the module-level store used by the HTTP app to a throwaway database.
os.environ.setdefault("EXCHANGE_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="timeswap-tests-"), "exchanges.sqlite3"))
os.environ.setdefault("ADMIN_USER_IDS", "admin,admin_2")
