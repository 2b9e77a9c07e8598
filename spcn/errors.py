'''spcn module errors.'''


# --- Normalizer errors -------------------------------------------------------
class NormalizerError(Exception):
    pass


class NormalizerNotFitError(NormalizerError):
    def __init__(self):
        super().__init__(
            'Normalizer has not been fit: call normalizer.fit()'
        )


class NotNormalizableError(NormalizerError):
    '''Raised when an image cannot be factorized into two stains.'''

    default_reason = 'image is not normalizable'

    def __init__(self, role=None, reason=None):
        self.role = role
        self.reason = reason if reason is not None else self.default_reason
        if role is not None:
            msg = 'Unable to normalize {} image: {}'.format(role, self.reason)
        else:
            msg = 'Unable to normalize image: {}'.format(self.reason)
        super().__init__(msg)

    def __reduce__(self):
        return (self.__class__, (self.role, self.reason))


class InsufficientTissueError(NotNormalizableError):
    default_reason = 'no tissue remains after background filtering'


class DegenerateDistinguishersError(NotNormalizableError):
    default_reason = 'unable to distinguish unstained, hematoxylin and eosin colors'


# --- Image errors ------------------------------------------------------------
class ImageLoadError(Exception):
    def __init__(self, path):
        self.path = path
        super().__init__('Unable to read image at {}'.format(path))

    def __reduce__(self):
        return (ImageLoadError, (self.path,))
