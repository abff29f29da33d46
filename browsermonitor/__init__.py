"""browsermonitor - capture browser console, network, cookies and DOM.

Attaches to (or launches) Chrome, records console output and network
traffic of one page, and exposes the captured data through a keyboard
command loop and a local HTTP API so it can be dumped to files on demand.
"""

__version__ = "1.0.0"
