"""
traffic_log

Logs per-connection byte counts at debug level. Drop-in example of a
dispatch module; remove it from mods/ to disable.
"""

import logging

log = logging.getLogger("tera-proxy.mods.traffic_log")


class TrafficCounter:
    def __init__(self, connection):
        self.connection = connection
        self.client_bytes = 0
        self.server_bytes = 0

    def on_client_data(self, data):
        self.client_bytes += len(data)

    def on_server_data(self, data):
        self.server_bytes += len(data)

    def on_close(self):
        log.debug(
            "%s client->server %d bytes, server->client %d bytes",
            self.connection.describe(), self.client_bytes, self.server_bytes,
        )


def setup(connection):
    return TrafficCounter(connection)
