"""
Banking system container

Wires every component from one BankConfig. The HTTP layer holds exactly one
instance; tests build their own over in-memory storage.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from .accounts import AccountManager
from .audit import AuditTrail
from .auth import AuthService, LockoutPolicy
from .config import BankConfig
from .identities import IdentityManager
from .logging_config import get_logger
from .rate_limit import RateLimiter
from .reporting import ReportingEngine
from .revocation import RevocationCache, create_revocation_cache
from .storage import StorageInterface, create_storage
from .tokens import TokenService
from .transactions import TransactionEngine


class BankingSystem:
    """Core banking system with all components initialized"""

    def __init__(self, config: BankConfig, storage: Optional[StorageInterface] = None,
                 revocation_cache: Optional[RevocationCache] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.logger = get_logger("netbank.system")

        self.storage = storage or create_storage(config.database_url)
        self.revocation_cache = revocation_cache or create_revocation_cache(
            config.revocation_cache_url, config.cache_timeout_seconds
        )

        self.audit_trail = AuditTrail(self.storage)
        self.identity_manager = IdentityManager(self.storage, self.audit_trail, clock=clock)
        self.account_manager = AccountManager(self.storage, self.audit_trail, clock=clock)
        self.token_service = TokenService(
            self.storage, self.revocation_cache, self.audit_trail, config, clock=clock
        )
        self.auth_service = AuthService(
            self.identity_manager, self.token_service, self.audit_trail,
            LockoutPolicy.from_config(config), clock=clock
        )
        self.transaction_engine = TransactionEngine(
            self.storage, self.account_manager, self.audit_trail, clock=clock
        )
        self.reporting_engine = ReportingEngine(
            self.account_manager, self.transaction_engine, self.audit_trail
        )
        self.rate_limiter = RateLimiter(
            refill_per_second=config.rate_limit_refill_per_second,
            burst=config.rate_limit_burst,
            lock_timeout_seconds=config.cache_timeout_seconds
        )

        self.logger.info(f"Banking system initialized (mode={config.mode})")

    def recover_stuck_approvals(self) -> int:
        """Settle approvals a crash or lost worker left unresolved"""
        resolved = self.transaction_engine.resolve_stuck_approvals(
            older_than=timedelta(seconds=self.config.stuck_approval_seconds)
        )
        if resolved:
            self.logger.warning(f"Resolved {len(resolved)} stuck approval(s)")
        return len(resolved)

    def close(self) -> None:
        """Release storage and cache connections"""
        self.revocation_cache.close()
        self.storage.close()
