import gettext


language = gettext.translation('walletsync', fallback=True)


def _(message: str) -> str:
    return language.gettext(message)
