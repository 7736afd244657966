# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit account passwords or proxy credentials. Use:
- .env (local, gitignored)
- config_local.py (local safe overrides, gitignored)

This file exists to make the repo self-documenting even without opening .env.example.
"""

ENV_VARS = {
    # App / logging
    "FLEET_APP_NAME": "App display name (default: fleet).",
    "FLEET_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Paths (gitignored)
    "FLEET_DATA_DIR": "Local data directory for logs and the database (default: .local/fleet).",
    "FLEET_ACCOUNTS_DB_PATH": "AccountStore SQLite path (default: <data_dir>/accounts.sqlite3).",
    "FLEET_SHUTDOWN_FLAG_PATH": "Creating this file triggers a graceful shutdown (default: .shutdown).",
    # Scheduling
    "FLEET_MAX_CONCURRENT_TASKS": "Global ceiling of concurrently running tasks (default: 100).",
    "FLEET_BATCH_SIZE": "Accounts submitted per batch by each capability loop (default: 5).",
    "FLEET_TASK_TIMEOUT_SECONDS": "Per-task timeout applied around capability bodies (default: 300).",
    "FLEET_DRAIN_TIMEOUT_SECONDS": "How long shutdown waits for running tasks (default: 30).",
    "FLEET_STATS_INTERVAL_SECONDS": "Queue/pool/gate stats log interval; 0 disables (default: 30).",
    # Session hosts (Playwright Chromium)
    "FLEET_HEADLESS": "Run shared hosts headless (true/false, default: true).",
    "FLEET_BROWSER_ARGS": "Comma/space separated extra Chromium arguments.",
    "FLEET_VIEWPORT_WIDTH": "Context viewport width (default: 1280).",
    "FLEET_VIEWPORT_HEIGHT": "Context viewport height (default: 720).",
    "FLEET_USER_AGENT": "Context user agent (default: a desktop Chrome UA).",
    "FLEET_LOCALE": "Context locale (default: cs-CZ).",
    "FLEET_TIMEZONE_ID": "Context timezone (default: Europe/Prague).",
    "FLEET_MAX_CONTEXTS_PER_HOST": "Contexts a host serves before it is recycled; 0 = never (default: 500).",
    "FLEET_HOST_BACKOFF_BASE_SECONDS": "First backoff after a failed host launch (default: 5).",
    "FLEET_HOST_BACKOFF_CAP_SECONDS": "Upper bound of the launch backoff (default: 300).",
    # Manual intervention
    "FLEET_SURFACE_POLL_SECONDS": "Login poll interval of manual surfaces (default: 2).",
    "FLEET_NAVIGATION_TIMEOUT_SECONDS": "Page navigation timeout (default: 30).",
}
