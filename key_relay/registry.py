import threading
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from .models import Credential


# ===========================
# Key Registry
# ===========================

class KeyRegistry:
    """Holds the configured credentials and their mutable health state.

    The set itself is fixed between reloads; only each credential's
    error score and cooldown change, through ``reset`` and ``penalize``.
    """

    def __init__(self, keys: Iterable[Tuple[str, Optional[str]]] = ()):
        self._credentials: List[Credential] = []
        self._lock = threading.Lock()
        self.reload(keys)

    def reload(self, keys: Iterable[Tuple[str, Optional[str]]]) -> None:
        """Recreate the credential set, dropping entries without a secret."""
        credentials = []
        for identifier, secret in keys:
            if not secret or not secret.strip():
                logger.info(f"Skipping {identifier}: no secret configured")
                continue
            credential = Credential(identifier, secret.strip())
            credentials.append(credential)
            logger.info(f"  - Loaded {identifier} ({credential.masked})")

        with self._lock:
            self._credentials = credentials

        if credentials:
            logger.info(f"Successfully loaded {len(credentials)} API key(s).")
        else:
            logger.warning("No API keys configured. Every request will fail until keys are provided.")

    @property
    def credentials(self) -> List[Credential]:
        with self._lock:
            return list(self._credentials)

    def get(self, identifier: str) -> Credential:
        for credential in self.credentials:
            if credential.identifier == identifier:
                return credential
        raise KeyError(identifier)

    def reset(self, identifier: str) -> None:
        self.get(identifier).reset()

    def penalize(self, identifier: str, score_delta: int, cooldown_until: Optional[float] = None) -> None:
        self.get(identifier).penalize(score_delta, cooldown_until)

    def __len__(self) -> int:
        return len(self.credentials)
