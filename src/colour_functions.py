##############################################################
## Section 0: The required packages
##############################################################

import numpy as np
from dataclasses import dataclass

# for plotting figures
import matplotlib.pyplot as plt
import matplotlib.ticker as mticker
from matplotlib.colors import hsv_to_rgb

##############################################################
## Section 1.1: Flip time -> colour
##############################################################

def flip_time_to_hsl(time, max_time):
    '''
    Hue in degrees, saturation and lightness in percent. A pixel that never
    flipped (time == max_time) is black.
    '''
    hue = (time / max_time) * 360
    saturation = 100.0
    lightness = 0.0 if time == max_time else 50.0
    return hue, saturation, lightness

def flip_times_to_hsl(times, max_time):
    """
    Vectorised flip_time_to_hsl. Returns three float arrays.
    """
    times = np.asarray(times, dtype=np.float64)
    hue = (times / max_time) * 360
    saturation = np.full_like(times, 100.0)
    lightness = np.where(times == max_time, 0.0, 50.0)
    return hue, saturation, lightness

def hsl_to_rgb(hue, saturation, lightness):
    '''
    HSL (degrees, percent, percent) to uint8 RGB with shape (..., 3).
    Goes through HSV so that matplotlib does the sector arithmetic.
    '''
    h = (np.asarray(hue, dtype=np.float64) / 360.0) % 1.0
    s = np.asarray(saturation, dtype=np.float64) / 100.0
    l = np.asarray(lightness, dtype=np.float64) / 100.0

    v = l + s * np.minimum(l, 1 - l)
    with np.errstate(divide='ignore', invalid='ignore'):
        s_v = np.where(v > 0, 2 * (1 - l / v), 0.0)

    hsv = np.stack(np.broadcast_arrays(h, s_v, v), axis=-1)
    return np.round(hsv_to_rgb(hsv) * 255).astype(np.uint8)

##############################################################
## Section 1.2: The render target
##############################################################

@dataclass(frozen=True)
class FillCommand:
    """One sampled pixel painted as a width_px x height_px HSL rectangle."""

    x: int
    y: int
    width_px: int
    height_px: int
    hue: float
    saturation: float
    lightness: float


class PixelBuffer:
    '''
    An RGB image of shape (height, width, 3) that receives fill commands.
    Rectangles running past the right or bottom edge are clipped.
    '''

    def __init__(self, width, height):
        self.width = int(width)
        self.height = int(height)
        self.pixels = np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def clear(self):
        self.pixels[...] = 0

    def fill(self, command):
        rgb = hsl_to_rgb(command.hue, command.saturation, command.lightness)
        self.pixels[command.y:command.y + command.height_px,
                    command.x:command.x + command.width_px] = rgb

    def paint(self, xs, ys, size, rgb):
        """
        Paint size x size squares with top-left corners (xs, ys) in one go.
        rgb has shape (n, 3).
        """
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)

        for dy in range(size):
            for dx in range(size):
                yy = ys + dy
                xx = xs + dx
                inside = (yy < self.height) & (xx < self.width)
                self.pixels[yy[inside], xx[inside]] = rgb[inside]

##############################################################
## Section 1.3: Chaos map visualisation
##############################################################

def pi_formatter(x, pos):
    tol = 1e-10
    if np.isclose(x, np.pi, atol=tol):
        return r'$\pi$'
    if np.isclose(x, -np.pi, atol=tol):
        return r'$-\pi$'
    if np.isclose(x, 0, atol=tol):
        return r'$0$'
    return f'{x:.2f}'

def visualise_chaos_map(buffer, show=True, dpi=200, fig_size=(6, 4.5), title=''):
    '''
    Show a finished (or partial) pixel buffer with the initial angles on the
    axes: theta1 grows to the right, theta2 grows downwards.
    '''
    fig = plt.figure(figsize=(fig_size[0], fig_size[1]), dpi=dpi)

    plt.imshow(
        buffer.pixels,
        origin='upper',
        extent=[-np.pi, np.pi, np.pi, -np.pi],
        aspect='auto',
        interpolation='nearest'
    )

    fontsize = 12
    plt.xlabel(r'$\theta_1$', fontsize=fontsize)
    plt.ylabel(r'$\theta_2$', fontsize=fontsize)

    ax = plt.gca()
    ax.set_xticks([-np.pi, 0, np.pi])
    ax.set_yticks([-np.pi, 0, np.pi])
    ax.xaxis.set_major_formatter(mticker.FuncFormatter(pi_formatter))
    ax.yaxis.set_major_formatter(mticker.FuncFormatter(pi_formatter))

    if title:
        plt.title(title)
    plt.tight_layout()

    if show:
        plt.show()

    return fig
