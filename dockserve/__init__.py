"""dockserve: expose labelled Docker containers as Tailscale services.

Watches container lifecycle events (plus a periodic timer), derives the
wanted service/funnel configuration from container labels and drives the
`tailscale` CLI until the node matches. Only services named "svc:..." are
ever touched, and all of them are removed again on shutdown.
"""
