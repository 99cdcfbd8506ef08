"""tunnelgate - authorization plugin and liveness checker for frp servers.

frps calls the plugin endpoint for every Login, NewProxy, CloseProxy, Ping,
NewWorkConn and NewUserConn operation; tunnelgate accepts or rejects them
based on the users and tokens in a hot-reloaded YAML file. It also probes
registered subdomains to tell whether their tunnel is up and serving the
expected application.
"""

__version__ = "1.0.0"
