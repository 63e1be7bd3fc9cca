class ScriptEmptyError(Exception):
    def __init__(self, script):
        super().__init__(script)

    @property
    def script(self):
        return self.args[0]

    def __str__(self):
        filename = getattr(self.script, "filename", "")
        if filename:
            return "script is empty: {}".format(filename)
        return "script is empty"


class ProtocolError(Exception):
    pass


class MessageDecodeError(ProtocolError):
    def __init__(self, msg, field=None):
        super().__init__(msg, field)

    @property
    def msg(self):
        return self.args[0]

    @property
    def field(self):
        return self.args[1]

    def __str__(self):
        if self.field:
            return "{}: {}".format(self.field, self.msg)
        return self.msg


class ScriptWarning(UserWarning):
    pass
