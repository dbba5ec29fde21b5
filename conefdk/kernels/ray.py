"""Per-ray and per-voxel routines shared by the CPU and CUDA kernels.

Every function here is registered with ``numba.extending.register_jitable``
so it compiles into both ``njit`` and ``cuda.jit`` kernels. All geometry is
expressed in continuous voxel-index space of the volume (voxel ``i`` has its
centre at index ``i``); a ray is the segment ``s + t * d`` for ``t`` in
``[0, 1]`` from the source to the detector pixel, and ``length`` is its
physical length.
"""

import math
from numba.extending import register_jitable

from ..constants import _INF, _EPSILON


SIDDON = 0
JOSEPH = 1
RAYCAST = 2


# ============================================================================
# Interpolation
# ============================================================================

@register_jitable
def _trilinear(vol, x, y, z):
    """Trilinearly interpolate `vol` (stored z, y, x) at a continuous index."""
    nz, ny, nx = vol.shape
    ix0 = max(0, min(int(math.floor(x)), nx - 2))
    iy0 = max(0, min(int(math.floor(y)), ny - 2))
    iz0 = max(0, min(int(math.floor(z)), nz - 2))
    ix1 = min(ix0 + 1, nx - 1)
    iy1 = min(iy0 + 1, ny - 1)
    iz1 = min(iz0 + 1, nz - 1)
    fx = max(0.0, min(x - ix0, 1.0))
    fy = max(0.0, min(y - iy0, 1.0))
    fz = max(0.0, min(z - iz0, 1.0))
    gx = 1.0 - fx
    gy = 1.0 - fy
    gz = 1.0 - fz
    return (
        gz * (gy * (gx * vol[iz0, iy0, ix0] + fx * vol[iz0, iy0, ix1])
              + fy * (gx * vol[iz0, iy1, ix0] + fx * vol[iz0, iy1, ix1]))
        + fz * (gy * (gx * vol[iz1, iy0, ix0] + fx * vol[iz1, iy0, ix1])
                + fy * (gx * vol[iz1, iy1, ix0] + fx * vol[iz1, iy1, ix1]))
    )


@register_jitable
def _bilinear(proj, fu, fv):
    """Bilinearly interpolate `proj` (stored v, u); zero outside the pixel centres."""
    nv, nu = proj.shape
    if fu < 0.0 or fu > nu - 1.0 or fv < 0.0 or fv > nv - 1.0:
        return 0.0
    iu0 = max(0, min(int(math.floor(fu)), nu - 2))
    iv0 = max(0, min(int(math.floor(fv)), nv - 2))
    iu1 = min(iu0 + 1, nu - 1)
    iv1 = min(iv0 + 1, nv - 1)
    wu = fu - iu0
    wv = fv - iv0
    return (
        (1.0 - wv) * ((1.0 - wu) * proj[iv0, iu0] + wu * proj[iv0, iu1])
        + wv * ((1.0 - wu) * proj[iv1, iu0] + wu * proj[iv1, iu1])
    )


# ============================================================================
# Segment Clipping
# ============================================================================

@register_jitable
def _clip_axis(s, d, lower, upper, t_min, t_max):
    """Intersect the parameter range with one slab ``lower <= s + t d <= upper``."""
    if abs(d) > _EPSILON:
        t1 = (lower - s) / d
        t2 = (upper - s) / d
        if t1 > t2:
            t1, t2 = t2, t1
        return max(t_min, t1), min(t_max, t2)
    if s < lower or s > upper:
        return 1.0, 0.0
    return t_min, t_max


@register_jitable
def _clip_box(sx, sy, sz, dx, dy, dz, lower, nx, ny, nz):
    """Clip the unit segment to the box ``[lower, n - 1 - lower]`` on every axis."""
    t_min, t_max = 0.0, 1.0
    t_min, t_max = _clip_axis(sx, dx, lower, nx - 1.0 - lower, t_min, t_max)
    t_min, t_max = _clip_axis(sy, dy, lower, ny - 1.0 - lower, t_min, t_max)
    t_min, t_max = _clip_axis(sz, dz, lower, nz - 1.0 - lower, t_min, t_max)
    return t_min, t_max


# ============================================================================
# Ray Integrals
# ============================================================================

@register_jitable
def _siddon_ray(vol, sx, sy, sz, dx, dy, dz, length):
    """Exact voxel-length weighted line integral with nearest-voxel values."""
    nz, ny, nx = vol.shape
    t_min, t_max = _clip_box(sx, sy, sz, dx, dy, dz, -0.5, nx, ny, nz)
    if t_min >= t_max:
        return 0.0

    # === TRAVERSAL INITIALIZATION ===
    ix = max(0, min(int(math.floor(sx + t_min * dx + 0.5)), nx - 1))
    iy = max(0, min(int(math.floor(sy + t_min * dy + 0.5)), ny - 1))
    iz = max(0, min(int(math.floor(sz + t_min * dz + 0.5)), nz - 1))
    step_x = 1 if dx >= 0 else -1
    step_y = 1 if dy >= 0 else -1
    step_z = 1 if dz >= 0 else -1
    if abs(dx) > _EPSILON:
        tx = (ix + 0.5 * step_x - sx) / dx
        dt_x = abs(1.0 / dx)
    else:
        tx, dt_x = _INF, _INF
    if abs(dy) > _EPSILON:
        ty = (iy + 0.5 * step_y - sy) / dy
        dt_y = abs(1.0 / dy)
    else:
        ty, dt_y = _INF, _INF
    if abs(dz) > _EPSILON:
        tz = (iz + 0.5 * step_z - sz) / dz
        dt_z = abs(1.0 / dz)
    else:
        tz, dt_z = _INF, _INF

    # === TRAVERSAL LOOP ===
    accum = 0.0
    t = t_min
    while t < t_max:
        t_next = min(tx, ty, tz, t_max)
        if t_next > t:
            accum += vol[iz, iy, ix] * (t_next - t)
            t = t_next
        if t >= t_max:
            break
        if tx <= t_next:
            ix += step_x
            tx += dt_x
        if ty <= t_next:
            iy += step_y
            ty += dt_y
        if tz <= t_next:
            iz += step_z
            tz += dt_z
        if ix < 0 or ix >= nx or iy < 0 or iy >= ny or iz < 0 or iz >= nz:
            break
    return accum * length


@register_jitable
def _joseph_ray(vol, sx, sy, sz, dx, dy, dz, length):
    """Trilinear samples on every plane of the dominant axis.

    Interior samples are weighted by one plane spacing, the first and last
    samples only by the part of the segment they cover.
    """
    nz, ny, nx = vol.shape
    t_min, t_max = _clip_box(sx, sy, sz, dx, dy, dz, 0.0, nx, ny, nz)
    if t_min >= t_max:
        return 0.0

    # === DOMINANT AXIS ===
    ax, ay, az = abs(dx), abs(dy), abs(dz)
    if ax >= ay and ax >= az:
        s_a, d_a = sx, dx
    elif ay >= az:
        s_a, d_a = sy, dy
    else:
        s_a, d_a = sz, dz
    a_in = s_a + t_min * d_a
    a_out = s_a + t_max * d_a
    lo = min(a_in, a_out)
    hi = max(a_in, a_out)
    step_length = length / abs(d_a)

    k0 = int(math.ceil(lo))
    k1 = int(math.floor(hi))
    if k0 > k1:
        t_mid = 0.5 * (t_min + t_max)
        val = _trilinear(vol, sx + t_mid * dx, sy + t_mid * dy, sz + t_mid * dz)
        return val * (hi - lo) * step_length

    # === PLANE SAMPLING ===
    accum = 0.0
    for k in range(k0, k1 + 1):
        t = (k - s_a) / d_a
        lower = lo if k == k0 else k - 0.5
        upper = hi if k == k1 else k + 0.5
        accum += _trilinear(vol, sx + t * dx, sy + t * dy, sz + t * dz) * (upper - lower)
    return accum * step_length


@register_jitable
def _raycast_ray(vol, sx, sy, sz, dx, dy, dz, length, step):
    """Trilinear samples at a fixed physical step with end-weighted samples."""
    nz, ny, nx = vol.shape
    t_min, t_max = _clip_box(sx, sy, sz, dx, dy, dz, 0.0, nx, ny, nz)
    if t_min >= t_max:
        return 0.0
    segment = (t_max - t_min) * length
    n_steps = int(math.floor(segment / step))
    if n_steps == 0:
        t_mid = 0.5 * (t_min + t_max)
        return _trilinear(vol, sx + t_mid * dx, sy + t_mid * dy, sz + t_mid * dz) * segment

    dt = step / length
    accum = 0.0
    for j in range(n_steps + 1):
        t = t_min + j * dt
        lower = 0.0 if j == 0 else (j - 0.5) * step
        upper = segment if j == n_steps else (j + 0.5) * step
        accum += _trilinear(vol, sx + t * dx, sy + t * dy, sz + t * dz) * (upper - lower)
    return accum


@register_jitable
def _trace_pixel(vol, ray, iu, iv, method, step):
    """Line integral from the source to detector pixel ``(iu, iv)``.

    `ray` packs, in voxel-index space, the source position, the position of
    pixel ``(0, 0)``, the per-pixel steps along ``u`` and ``v``, and finally
    the voxel spacing used to measure physical length.
    """
    sx, sy, sz = ray[0], ray[1], ray[2]
    px = ray[3] + iu * ray[6] + iv * ray[9]
    py = ray[4] + iu * ray[7] + iv * ray[10]
    pz = ray[5] + iu * ray[8] + iv * ray[11]
    dx, dy, dz = px - sx, py - sy, pz - sz
    lx, ly, lz = dx * ray[12], dy * ray[13], dz * ray[14]
    length = math.sqrt(lx * lx + ly * ly + lz * lz)
    if length < _EPSILON:
        return 0.0
    if method == SIDDON:
        return _siddon_ray(vol, sx, sy, sz, dx, dy, dz, length)
    if method == JOSEPH:
        return _joseph_ray(vol, sx, sy, sz, dx, dy, dz, length)
    return _raycast_ray(vol, sx, sy, sz, dx, dy, dz, length, step)


# ============================================================================
# Voxel-driven Back-projection
# ============================================================================

@register_jitable
def _backproject_voxel(proj, mat, x, y, z, cone_weighting, footprint):
    """Value of `proj` seen by voxel ``(x, y, z)`` through the index matrix `mat`.

    `mat` maps a voxel index to homogeneous detector pixel indices. With
    `cone_weighting` the sample is divided by ``w ** 2``, the squared depth
    of the voxel along the central ray.

    A positive ``footprint[0]`` selects the adjoint weighting instead: the
    sample is multiplied by the summed chord length of the pixel rays
    through the voxel, ``footprint[0] / (w ** 2 * cos(gamma))``, where
    ``footprint[1:3]`` is the principal point in pixel indices and
    ``footprint[3:5]`` the pixel spacing divided by the source-to-detector
    distance.
    """
    w = mat[2, 0] * x + mat[2, 1] * y + mat[2, 2] * z + mat[2, 3]
    if abs(w) < _EPSILON:
        return 0.0
    fu = (mat[0, 0] * x + mat[0, 1] * y + mat[0, 2] * z + mat[0, 3]) / w
    fv = (mat[1, 0] * x + mat[1, 1] * y + mat[1, 2] * z + mat[1, 3]) / w
    val = _bilinear(proj, fu, fv)
    if footprint[0] > 0.0:
        tu = (fu - footprint[1]) * footprint[3]
        tv = (fv - footprint[2]) * footprint[4]
        return val * footprint[0] * math.sqrt(1.0 + tu * tu + tv * tv) / (w * w)
    if cone_weighting:
        val = val / (w * w)
    return val
