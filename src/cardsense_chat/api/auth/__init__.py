from cardsense_chat.api.auth.base import AuthProvider, HeaderUserProvider

__all__ = ["AuthProvider", "HeaderUserProvider"]
