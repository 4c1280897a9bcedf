import os


def get_data_dir():
    # TWOSCHAT_DATA_DIR wins so installs can keep data outside the package.
    base = os.environ.get("TWOSCHAT_DATA_DIR", "").strip()
    if base:
        data_dir = base
    else:
        data_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), "twoschat_data")
    os.makedirs(data_dir, exist_ok=True)
    return data_dir


def get_db_path():
    return os.path.join(get_data_dir(), "twoschat.db")
