# This file marks the services package for API business logic modules.
# It exists so routers can depend on cohesive service classes instead of the engine directly.
# Service modules isolate request mapping and result shaping from transport concerns.
