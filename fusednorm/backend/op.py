class Op:
    def __init__(self, backend):
        self.backend = backend
        self._intermediate = []  # what backward needs from forward

    def save_for_backward(self, *x):
        self._intermediate.extend(x)

    def forward(self, *args, **kwargs):
        raise NotImplementedError

    def backward(self, *args, **kwargs):
        raise NotImplementedError

    @classmethod
    def apply(cls, *args, backend=None, **kwargs):
        """Run forward on a fresh op; returns (op, output) so backward can follow."""
        from fusednorm.backend import get_backend  # late import to avoid circular deps

        if backend is None:
            backend = get_backend()
        op = cls(backend=backend)
        out = op.forward(*args, **kwargs)
        return op, out
