from backoffice.db.base_class import Base  # noqa: F401


# IMPORT ALL MODELS HERE (THIS REGISTERS THEM WITH Base.metadata)
import backoffice.models  # noqa: F401,E402
