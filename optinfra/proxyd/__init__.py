"""JSON-RPC proxy building blocks: configuration, log levels, error wrapping and rate limiting."""