"""Hub-to-Siigo invoicing bridge.

Receives "pedido.pagado" webhooks from the commerce hub, turns each paid
order into a fiscal invoice on the Siigo API and reports the result back
to the hub.
"""

__version__ = "0.1.0"
