import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import aiohttp

from .errors import DispatchError
from .models import Command

logger = logging.getLogger("dispatch")

CALL_SERVICE = "call_service"

CommandCallback = Callable[[Command], Union[Any, Awaitable[Any]]]


class CommandDispatcher(ABC):
    """Executes device-control commands against the home.

    ``execute`` returns an acknowledgement on success and raises
    ``DispatchError`` on failure. No rollback is offered.
    """

    @abstractmethod
    async def execute(self, command: Command) -> Any:
        """Execute one command and return its acknowledgement."""

    async def cleanup(self):
        """Release client-side resources."""


class CallbackDispatcher(CommandDispatcher):
    """Adapts an ``on_command`` callback, sync or async, to a dispatcher."""

    def __init__(self, on_command: CommandCallback):
        self.on_command = on_command

    async def execute(self, command: Command) -> Any:
        try:
            result = self.on_command(command)
            if inspect.isawaitable(result):
                result = await result
        except DispatchError:
            raise
        except Exception as e:
            raise DispatchError(f"Command '{command.name}' failed: {e}",
                                command_name=command.name) from e
        return result


class HomeAssistantDispatcher(CommandDispatcher):
    """Execute commands as Home Assistant service calls over REST."""

    def __init__(self, ha_url: str, ha_token: str,
                 verify_ssl: bool = True, timeout: float = 10.0):
        """
        Initialize the dispatcher.

        Args:
            ha_url: URL of the Home Assistant instance
            ha_token: Long-lived access token for Home Assistant
            verify_ssl: Verify the server certificate
            timeout: Timeout for each service call in seconds
        """
        self.ha_url = ha_url.rstrip('/')
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {ha_token}",
            "Content-Type": "application/json"
        }
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers=self.headers)
        return self.session

    @staticmethod
    def resolve_service(command: Command) -> Tuple[str, str, Dict[str, Any]]:
        """
        Map a command to a Home Assistant service call.

        Accepts ``call_service`` with ``domain``/``service``/``service_data``
        parameters, or a ``domain.service`` name whose parameters are the
        service data.

        Returns:
            Tuple of domain, service and service data
        """
        params = dict(command.parameters)

        if command.name == CALL_SERVICE:
            domain = params.pop("domain", None)
            service = params.pop("service", None)
            service_data = params.pop("service_data", None)
            if service_data is None:
                service_data = params
        elif command.name.count(".") == 1:
            domain, service = command.name.split(".")
            service_data = params
        else:
            raise DispatchError(f"Unsupported command '{command.name}'",
                                command_name=command.name)

        if not domain or not service:
            raise DispatchError(f"Command '{command.name}' is missing a domain or service",
                                command_name=command.name)
        if not isinstance(service_data, dict):
            raise DispatchError(f"Service data for '{command.name}' must be an object",
                                command_name=command.name)
        return domain, service, service_data

    async def execute(self, command: Command) -> Any:
        domain, service, service_data = self.resolve_service(command)
        endpoint = f"{self.ha_url}/api/services/{domain}/{service}"

        try:
            session = await self._get_session()
            async with session.post(
                endpoint,
                json=service_data,
                ssl=self.verify_ssl,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status == 200:
                    logger.info(f"Called {domain}.{service} with {service_data}")
                    return await response.json(content_type=None)
                text = await response.text()
                raise DispatchError(f"{domain}.{service} returned {response.status}: {text}",
                                    command_name=command.name)

        except asyncio.TimeoutError as e:
            raise DispatchError(f"{domain}.{service} timed out after {self.timeout}s",
                                command_name=command.name) from e
        except aiohttp.ClientError as e:
            raise DispatchError(f"HTTP error calling {domain}.{service}: {e}",
                                command_name=command.name) from e

    async def cleanup(self):
        """Close the HTTP session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
