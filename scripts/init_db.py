from registry_sync.db.session import engine, wait_for_store
from registry_sync.models.base import Base
from registry_sync.models import tables  # noqa: F401


def main():
    wait_for_store(engine)
    Base.metadata.create_all(bind=engine)
    print("DB tables created.")


if __name__ == "__main__":
    main()
