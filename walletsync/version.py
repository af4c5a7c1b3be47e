PACKAGE_VERSION = '0.4.0'                          # version of the client package
PACKAGE_DATE = '2024-06-03T12:00:00.000000+00:00'  # official timestamp for client package
# Negotiate protocol in this range
PROTOCOL_MIN = (1, 4)
PROTOCOL_MAX = (1, 4, 2)
