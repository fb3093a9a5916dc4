from procurement.services.migration_flags import MigrationFlagState, get_migration_flags


def get_flags() -> MigrationFlagState:
    return get_migration_flags()
