from config import load_settings
from database import create_tables


def main():
    settings = load_settings()
    create_tables(settings.database_url)
    print(f"Tables created successfully in {settings.database_url}")


if __name__ == "__main__":
    main()
