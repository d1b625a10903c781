class CVEngineError(Exception):

    def __init__(self, msg):
        super().__init__(msg)
        self.msg = msg


class ConfigurationError(CVEngineError):
    pass


class NumericalError(CVEngineError):

    def __init__(self, msg, task=None):
        if task is not None:
            msg = "task {}: {}".format(task, msg)
        super().__init__(msg)
        self.task = task


class ZeroWeightError(NumericalError):

    def __init__(self, task=None):
        super().__init__("total weight is zero (no active neighbors); "
                         "the normalized value is undefined", task=task)


class DegenerateWeightWarning(UserWarning):
    pass
