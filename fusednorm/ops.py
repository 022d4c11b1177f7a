from fusednorm.backend.op import Op
from fusednorm.functional import layer_norm_backward, layer_norm_forward


class LayerNorm(Op):
    """layer norm over the trailing normalized_shape dims"""

    rms_only = False

    def forward(
        self,
        x,
        gamma=None,
        beta=None,
        normalized_shape=None,
        eps=1e-5,
        memory_efficient=False,
        launch=None,
    ):
        out, mean, invvar = layer_norm_forward(
            x,
            gamma,
            beta,
            epsilon=eps,
            rms_only=self.rms_only,
            normalized_shape=normalized_shape,
            backend=self.backend,
            launch=launch,
        )
        if memory_efficient:
            # Keep the output instead of the input, and drop the mean.
            self.save_for_backward(out, None, invvar)
        else:
            self.save_for_backward(x, mean, invvar)
        self.save_for_backward(gamma, beta, normalized_shape, eps, memory_efficient, launch)
        return out

    def backward(self, grad):
        (
            input_or_output,
            mean,
            invvar,
            gamma,
            beta,
            normalized_shape,
            eps,
            memory_efficient,
            launch,
        ) = self._intermediate
        grad_input, grad_gamma, grad_beta = layer_norm_backward(
            grad,
            input_or_output,
            mean,
            invvar,
            gamma,
            beta,
            epsilon=eps,
            memory_efficient=memory_efficient,
            rms_only=self.rms_only,
            normalized_shape=normalized_shape,
            backend=self.backend,
            launch=launch,
        )
        return [grad_input, grad_gamma, grad_beta]


class RMSNorm(LayerNorm):
    """root-mean-square norm: no centering, no shift"""

    rms_only = True

    def forward(self, x, gamma=None, normalized_shape=None, eps=1e-5, memory_efficient=False, launch=None):
        return super().forward(
            x,
            gamma,
            None,
            normalized_shape=normalized_shape,
            eps=eps,
            memory_efficient=memory_efficient,
            launch=launch,
        )

    def backward(self, grad):
        grad_input, grad_gamma, _ = super().backward(grad)
        return [grad_input, grad_gamma]


__all__ = ["LayerNorm", "RMSNorm"]
