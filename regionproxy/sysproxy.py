"""System-wide SOCKS proxy toggle.

Only macOS is supported, through networksetup. Elsewhere the configurator is
a no-op that always reports the proxy as disabled.
"""

import sys
from typing import Protocol

from .utils import debug, log, run_cmd

PREFERRED_SERVICES = [
    "Wi-Fi",
    "Ethernet",
    "USB 10/100/1000 LAN",
    "Thunderbolt Ethernet",
]


class SystemProxy(Protocol):
    def enable(self, port: int) -> None: ...

    def disable(self) -> None: ...

    def is_enabled(self) -> bool: ...


class MacOSSystemProxy:
    def active_service(self) -> str:
        """First preferred network service that has an IP address, else Wi-Fi."""
        services = run_cmd("networksetup", "-listallnetworkservices")
        for service in PREFERRED_SERVICES:
            if service not in services:
                continue
            info = run_cmd("networksetup", "-getinfo", service, check=False)
            if "IP address:" in info and "IP address: none" not in info:
                debug(f"Found active network service: {service}")
                return service
        return "Wi-Fi"

    def enable(self, port: int) -> None:
        service = self.active_service()
        log(f"Enabling SOCKS proxy on {service} (localhost:{port})")
        run_cmd("networksetup", "-setsocksfirewallproxy", service, "localhost", str(port))
        run_cmd("networksetup", "-setsocksfirewallproxystate", service, "on")
        log("SOCKS proxy enabled")

    def disable(self) -> None:
        service = self.active_service()
        log(f"Disabling SOCKS proxy on {service}")
        run_cmd("networksetup", "-setsocksfirewallproxystate", service, "off")
        log("SOCKS proxy disabled")

    def is_enabled(self) -> bool:
        service = self.active_service()
        output = run_cmd("networksetup", "-getsocksfirewallproxy", service, check=False)
        return "Enabled: Yes" in output


class NoopSystemProxy:
    def enable(self, port: int) -> None:
        log(f"System proxy configuration is only supported on macOS; use SOCKS5 localhost:{port} in your applications")

    def disable(self) -> None:
        debug("No system proxy to disable on this platform")

    def is_enabled(self) -> bool:
        return False


def get_system_proxy() -> SystemProxy:
    if sys.platform == "darwin":
        return MacOSSystemProxy()
    return NoopSystemProxy()
