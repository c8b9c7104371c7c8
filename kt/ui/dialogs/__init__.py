from kt.ui.dialogs.login import LoginDialog
from kt.ui.dialogs.settings import ConfigDialog

__all__ = ["LoginDialog", "ConfigDialog"]
