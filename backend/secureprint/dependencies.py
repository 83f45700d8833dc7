from secureprint.services.lifecycle import LifecycleManager, lifecycle_manager


def get_lifecycle() -> LifecycleManager:
    return lifecycle_manager
