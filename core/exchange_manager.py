"""
Exchange Manager: Central Registry for Exchange Connections

The ExchangeManager maps exchange names to adapter factories and owns the
clients created from them.

Design Benefits:
    - Single source of truth for available exchanges
    - Explicit registration (no runtime type discovery)
    - Lazy creation of clients (connect on first use)
    - Centralized lifecycle management (shutdown_all)

Built-in adapters are listed in one table, exchanges.BUILTIN_EXCHANGES.
Adding an exchange means writing its adapter and adding one line there, or
calling register_exchange() from application code.

Example Usage:
    manager = ExchangeManager()
    client = manager.create_client("kraken", credentials)
    ticker = await client.get_ticker("BTC-USD")
    await manager.shutdown_all()
"""

from typing import Callable, Dict, List, Optional, Tuple

from core.adapter import ExchangeAdapter
from core.client import ExchangeClient
from core.errors import NotSupportedError
from core.logging import logger
from core.schemas import Credentials


AdapterFactory = Callable[[], ExchangeAdapter]


class ExchangeManager:
    """
    Registry of adapter factories plus the clients created from them.

    Attributes:
        factories: Exchange name -> adapter factory
        clients: Exchange name -> client created by create_client()
        replaced: (name, client) pairs displaced by a later create_client(),
                  still closed by shutdown_all()

    Example:
        >>> manager = ExchangeManager()
        >>> manager.list_exchanges()
        ['binance', 'bitfinex', 'coinbase', 'kraken']
        >>> client = manager.get_client("binance")
        >>> await manager.shutdown_all()
    """

    def __init__(self, register_builtins: bool = True):
        """
        Initialize the manager.

        Args:
            register_builtins: Register the adapters shipped in exchanges/
        """
        self.factories: Dict[str, AdapterFactory] = {}
        self.clients: Dict[str, ExchangeClient] = {}
        self.replaced: List[Tuple[str, ExchangeClient]] = []

        if register_builtins:
            # Import here to avoid circular imports
            # Each exchange module imports from core, so we can't import at module level
            from exchanges import BUILTIN_EXCHANGES

            for name, factory in BUILTIN_EXCHANGES.items():
                self.register_exchange(name, factory)

        logger.info(
            f"ExchangeManager initialized with {len(self.factories)} exchange(s): "
            f"{', '.join(self.list_exchanges())}"
        )

    # ============================================
    # Registration
    # ============================================

    def register_exchange(self, name: str, factory: AdapterFactory) -> None:
        """
        Register (or replace) an adapter factory.

        Args:
            name: Exchange name (case-insensitive)
            factory: Zero-argument callable returning a new adapter
        """
        name = name.lower()
        if name in self.factories:
            logger.warning(f"Exchange '{name}' re-registered, replacing previous factory")
        self.factories[name] = factory
        logger.debug(f"Registered exchange: {name}")

    def has_exchange(self, name: str) -> bool:
        return name.lower() in self.factories

    def list_exchanges(self) -> List[str]:
        """Sorted names of all registered exchanges."""
        return sorted(self.factories)

    def create_adapter(self, name: str) -> ExchangeAdapter:
        """
        Build a fresh adapter for `name`.

        Raises:
            NotSupportedError: If the exchange is not registered
        """
        name = name.lower()

        if name not in self.factories:
            available = ", ".join(self.list_exchanges())
            logger.error(f"Exchange '{name}' not found. Available: {available}")
            raise NotSupportedError(
                f"Exchange '{name}' is not supported. Available exchanges: {available}"
            )

        return self.factories[name]()

    # ============================================
    # Client Lifecycle
    # ============================================

    def create_client(self, name: str, credentials: Optional[Credentials] = None, **kwargs) -> ExchangeClient:
        """
        Create a new client for an exchange and keep track of it.

        A second call for the same name replaces the tracked client. The old
        one stays usable and is still closed by shutdown_all().

        Args:
            name: Exchange name
            credentials: API keys for private calls
            **kwargs: Passed to ExchangeClient (transport, connector)
        """
        client = ExchangeClient(self.create_adapter(name), credentials=credentials, **kwargs)

        previous = self.clients.get(name.lower())
        if previous is not None:
            logger.warning(f"Replacing tracked {name.lower()} client; it will be closed on shutdown")
            self.replaced.append((name.lower(), previous))

        self.clients[name.lower()] = client
        logger.info(f"Created {name.lower()} client (private={credentials is not None})")
        return client

    def get_client(self, name: str) -> ExchangeClient:
        """Return the tracked client for `name`, creating a public one on first use."""
        client = self.clients.get(name.lower())
        if client is None:
            client = self.create_client(name)
        return client

    async def shutdown_all(self) -> None:
        """
        Close every tracked client.

        Errors from one client are logged and do not stop the others.
        """
        logger.info("Shutting down all exchange clients...")

        for name, client in self.replaced + list(self.clients.items()):
            try:
                await client.close()
                logger.info(f"✓ {name} client closed")
            except Exception as e:
                logger.error(f"✗ Error closing {name} client: {e}")

        self.clients.clear()
        self.replaced.clear()
        logger.info("All exchange clients shut down")
