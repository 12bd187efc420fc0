import os
from typing import Optional

import yaml
from pydantic import BaseModel


class AppConfigModel(BaseModel):
    LOGGING: bool = False
    PICKLE_PROTOCOL: int = 4
    FUTURE_ANNOTATIONS: bool = True
    SOURCE_PREFIX: str = "superclosure"


class ConfigModel(BaseModel):
    APP: AppConfigModel = AppConfigModel()

    def save(self, path: Optional[str] = None):
        """
        Write the current configuration back to YAML.

        Args:
            path: Destination file. Defaults to the package's own config.yaml.
        """

        if path is None:

            from .. import PATH

            path = os.path.join(PATH, "config.yaml")

        with open(path, "w") as file:

            yaml.dump(self.model_dump(), file)
