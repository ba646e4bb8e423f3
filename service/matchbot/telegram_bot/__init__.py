"""
Telegram Bot module for the matching service.

ARCHITECTURE: Thin routing layer - NO business logic duplication!
- Receives webhook updates from Telegram
- Logs users in via backend magic links (login events arrive over Mercure)
- Proxies chat actions to the backend REST API
- Relays live chat messages back to Telegram

Import submodules directly (bot, handlers, context, ...); the realtime layer
imports logging_config from here, so this package imports nothing eagerly.
"""
