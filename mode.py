"""
Development mode toggle: mock invoices vs. the real Lightning backend.

One ModeSettings instance is created per process and handed to the app.
Requests read the flag once and pass it down; only development builds may
change it, and changes are written back to the env file so they survive a
restart.
"""

import logging
import os
import threading
from typing import Optional

from dotenv import set_key

import config
from errors import ModeChangeForbidden

logger = logging.getLogger(__name__)

PERSIST_KEY = "USE_REAL_LNBITS"


def initial_use_mock(app_env: str, use_real_backend: bool) -> bool:
    return not use_real_backend and app_env != "production"


class ModeSettings:
    def __init__(
        self,
        app_env: Optional[str] = None,
        use_real_backend: Optional[bool] = None,
        env_file: Optional[str] = None,
    ):
        self.app_env = app_env if app_env is not None else config.APP_ENV
        use_real = config.USE_REAL_LNBITS if use_real_backend is None else use_real_backend
        self.env_file = env_file if env_file is not None else config.ENV_FILE
        self._use_mock = initial_use_mock(self.app_env, use_real)
        self._lock = threading.Lock()

    @property
    def can_change(self) -> bool:
        return self.app_env == "development"

    def get(self) -> bool:
        with self._lock:
            return self._use_mock

    def set(self, use_mock: bool) -> bool:
        if not self.can_change:
            raise ModeChangeForbidden()
        use_mock = bool(use_mock)
        with self._lock:
            self._use_mock = use_mock
        logger.info("Mode switched to %s", "mock" if use_mock else "real")
        self._persist(use_mock)
        return use_mock

    def _persist(self, use_mock: bool) -> None:
        """Write USE_REAL_LNBITS back to the env file if there is one."""
        if not self.env_file or not os.path.exists(self.env_file):
            return
        try:
            set_key(self.env_file, PERSIST_KEY, "false" if use_mock else "true", quote_mode="never")
        except OSError as e:
            # in-memory value still applies
            logger.error("Could not update %s: %s", self.env_file, e)
