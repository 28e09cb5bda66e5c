"""
CardSense chat gateway.

Routes a user's chat message to the CardSense knowledge backend, falls back to
a general chat-completion model when it is unavailable and keeps every
exchange in a durable conversation store.

    from cardsense_chat.gateway import ChatGateway
"""

__version__ = "0.1.0"
