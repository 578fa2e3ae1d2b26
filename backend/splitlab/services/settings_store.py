"""Runtime settings backed by the global_settings table."""
from typing import Optional
from sqlalchemy.orm import Session

from splitlab.models.global_setting import GlobalSetting


class SettingsStore:
    """Reads key/value settings editable at runtime."""

    def __init__(self, db: Session):
        self.db = db

    def get_setting_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        setting = self.db.get(GlobalSetting, key)
        if setting is None or setting.value is None:
            return default
        return setting.value

    def set_setting_value(self, key: str, value, description: str = "") -> GlobalSetting:
        setting = self.db.get(GlobalSetting, key)
        if setting is None:
            setting = GlobalSetting(key=key, description=description)
            self.db.add(setting)
        setting.value = str(value)
        self.db.commit()
        return setting
