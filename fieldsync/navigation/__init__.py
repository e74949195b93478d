from fieldsync.navigation.guard import NavigationDecision, NavigationGuard, Navigator

__all__ = ["NavigationDecision", "NavigationGuard", "Navigator"]
