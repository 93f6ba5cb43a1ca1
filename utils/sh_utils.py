#  Copyright 2021 The PlenOctree Authors.
#  Redistribution and use in source and binary forms, with or without
#  modification, are permitted provided that the following conditions are met:
#
#  1. Redistributions of source code must retain the above copyright notice,
#  this list of conditions and the following disclaimer.
#
#  2. Redistributions in binary form must reproduce the above copyright notice,
#  this list of conditions and the following disclaimer in the documentation
#  and/or other materials provided with the distribution.
#
#  THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
#  AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
#  IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE
#  ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE
#  LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
#  CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF
#  SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS
#  INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN
#  CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
#  ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
#  POSSIBILITY OF SUCH DAMAGE.

import torch

C0 = 0.28209479177387814
C1 = 0.4886025119029199
C2 = [
    1.0925484305920792,
    -1.0925484305920792,
    0.31539156525252005,
    -1.0925484305920792,
    0.5462742152960396
]
C3 = [
    -0.5900435899266435,
    2.890611442640554,
    -0.4570457994644658,
    0.3731763325901154,
    -0.4570457994644658,
    1.445305721320277,
    -0.5900435899266435
]


def num_sh_coeffs(deg):
    return (deg + 1) ** 2


def sh_degree_from_coeffs(num_coeffs):
    deg = int(round(num_coeffs ** 0.5)) - 1
    assert num_sh_coeffs(deg) == num_coeffs, "Invalid number of SH coefficients: {}".format(num_coeffs)
    return deg


def eval_sh_basis(deg, dirs):
    """
    Real SH basis up to degree deg, evaluated at unit directions.
    Args:
        deg: int SH deg. Currently, 0-3 supported
        dirs: unit directions [..., 3]
    Returns:
        [..., (deg+1) ** 2]
    """
    assert deg <= 3 and deg >= 0
    x, y, z = dirs[..., 0], dirs[..., 1], dirs[..., 2]
    basis = [torch.full_like(x, C0)]
    if deg > 0:
        basis += [-C1 * y, C1 * z, -C1 * x]
        if deg > 1:
            xx, yy, zz = x * x, y * y, z * z
            xy, yz, xz = x * y, y * z, x * z
            basis += [
                C2[0] * xy,
                C2[1] * yz,
                C2[2] * (2.0 * zz - xx - yy),
                C2[3] * xz,
                C2[4] * (xx - yy),
            ]
            if deg > 2:
                basis += [
                    C3[0] * y * (3 * xx - yy),
                    C3[1] * xy * z,
                    C3[2] * y * (4 * zz - xx - yy),
                    C3[3] * z * (2 * zz - 3 * xx - 3 * yy),
                    C3[4] * x * (4 * zz - xx - yy),
                    C3[5] * z * (xx - yy),
                    C3[6] * x * (xx - 3 * yy),
                ]
    return torch.stack(basis, dim=-1)


def eval_sh_basis_grad(deg, dirs):
    """
    Partial derivatives of eval_sh_basis w.r.t. the direction components.
    Returns:
        [..., (deg+1) ** 2, 3]
    """
    assert deg <= 3 and deg >= 0
    x, y, z = dirs[..., 0], dirs[..., 1], dirs[..., 2]
    zero = torch.zeros_like(x)

    def d(dx, dy, dz):
        return torch.stack((dx, dy, dz), dim=-1)

    grads = [d(zero, zero, zero)]
    if deg > 0:
        grads += [
            d(zero, torch.full_like(x, -C1), zero),
            d(zero, zero, torch.full_like(x, C1)),
            d(torch.full_like(x, -C1), zero, zero),
        ]
        if deg > 1:
            xx, yy, zz = x * x, y * y, z * z
            grads += [
                C2[0] * d(y, x, zero),
                C2[1] * d(zero, z, y),
                C2[2] * d(-2.0 * x, -2.0 * y, 4.0 * z),
                C2[3] * d(z, zero, x),
                C2[4] * d(2.0 * x, -2.0 * y, zero),
            ]
            if deg > 2:
                grads += [
                    C3[0] * d(6 * x * y, 3 * xx - 3 * yy, zero),
                    C3[1] * d(y * z, x * z, x * y),
                    C3[2] * d(-2 * x * y, 4 * zz - xx - 3 * yy, 8 * y * z),
                    C3[3] * d(-6 * x * z, -6 * y * z, 6 * zz - 3 * xx - 3 * yy),
                    C3[4] * d(4 * zz - 3 * xx - yy, -2 * x * y, 8 * x * z),
                    C3[5] * d(2 * x * z, -2 * y * z, xx - yy),
                    C3[6] * d(3 * xx - 3 * yy, -6 * x * y, zero),
                ]
    return torch.stack(grads, dim=-2)


def eval_sh(deg, sh, dirs):
    """
    Evaluate spherical harmonics at unit directions
    using hardcoded SH polynomials.
    ... Can be 0 or more batch dimensions.
    Args:
        deg: int SH deg. Currently, 0-3 supported
        sh: SH coeffs [..., C, (deg + 1) ** 2]
        dirs: unit directions [..., 3]
    Returns:
        [..., C]
    """
    coeff = num_sh_coeffs(deg)
    assert sh.shape[-1] >= coeff
    basis = eval_sh_basis(deg, dirs)
    return (sh[..., :coeff] * basis[..., None, :]).sum(-1)


def RGB2SH(rgb):
    return (rgb - 0.5) / C0
