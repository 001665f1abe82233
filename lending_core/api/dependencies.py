"""
Lending system container and FastAPI dependency
"""

from typing import Optional

from ..bulk_import import RepaymentImporter
from ..config import get_config
from ..events import EventDispatcher, get_global_dispatcher
from ..extensions import ExtensionSchema
from ..manager import LoanManager
from ..storage import StorageInterface, create_storage


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 extension_schema: Optional[ExtensionSchema] = None):
        config = get_config()
        self.storage = storage or create_storage(config.storage_backend, config.database_path)
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.loan_manager = LoanManager(
            self.storage,
            dispatcher=self.dispatcher,
            extension_schema=extension_schema,
        )
        self.importer = RepaymentImporter(self.loan_manager)


# Global lending system instance, built on first use
_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem()
    return _lending_system


def set_lending_system(system: Optional[LendingSystem]) -> None:
    """Replace the global instance (None rebuilds it from config on next use)"""
    global _lending_system
    _lending_system = system
