import os

# Settings are cached on first use, so the environment has to be in place
# before any application module is imported.
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SEED_DEFAULT_CATEGORIES", "false")
os.environ["GST_API_KEY"] = ""
