##############################################################
## Section 0: The required packages
##############################################################

# for computation
import numpy as np
import math
from dataclasses import dataclass

# for code parallelisation
from numba import njit

from config_functions import ChaosMapConfig, PhysicalParameters

##############################################################
## Section 1.1: The state of one double pendulum
##############################################################

@dataclass(frozen=True)
class PendulumState:
    """
    Angles (radians, never wrapped into [-pi, pi]) and angular velocities
    of the two arms.
    """

    theta1: float
    theta2: float
    omega1: float = 0.0
    omega2: float = 0.0

    def as_tuple(self):
        return self.theta1, self.theta2, self.omega1, self.omega2

##############################################################
## Section 1.2: Equations of motion
##############################################################

# error_model='numpy': a zero denominator gives inf/nan instead of raising
@njit(error_model='numpy', nogil=True)
def derivatives_numba(theta1, theta2, omega1, omega2, g, m1, m2, l1, l2):
    delta = theta1 - theta2
    sin_d = math.sin(delta)
    cos_d = math.cos(delta)

    den1 = (m1 + m2) * l1 - m2 * l1 * cos_d * cos_d
    den2 = (l2 / l1) * den1

    d_omega1 = (-m2 * l1 * omega1 * omega1 * sin_d * cos_d
                + m2 * g * math.sin(theta2) * cos_d
                + m2 * l2 * omega2 * omega2 * sin_d
                - (m1 + m2) * g * math.sin(theta1)) / den1

    d_omega2 = (m2 * l2 * omega2 * omega2 * sin_d * cos_d
                + (m1 + m2) * g * math.sin(theta1) * cos_d
                + (m1 + m2) * l1 * omega1 * omega1 * sin_d
                - (m1 + m2) * g * math.sin(theta2)) / den2

    return omega1, omega2, d_omega1, d_omega2

def derivatives(state, params=None):
    '''
    (dTheta1, dTheta2, dOmega1, dOmega2) for a PendulumState. Degenerate
    parameters (zero mass or length) give non-finite values, never an error.
    '''
    if params is None:
        params = PhysicalParameters()
    return derivatives_numba(*(float(v) for v in state.as_tuple()),
                             *(float(p) for p in params.as_tuple()))

##############################################################
## Section 1.3: The fixed-step integrator
##############################################################

@njit(error_model='numpy', nogil=True)
def rk4_step(theta1, theta2, omega1, omega2, dt, g, m1, m2, l1, l2):
    k1_t1, k1_t2, k1_w1, k1_w2 = derivatives_numba(
        theta1, theta2, omega1, omega2, g, m1, m2, l1, l2)

    k2_t1, k2_t2, k2_w1, k2_w2 = derivatives_numba(
        theta1 + k1_t1 * dt * 0.5,
        theta2 + k1_t2 * dt * 0.5,
        omega1 + k1_w1 * dt * 0.5,
        omega2 + k1_w2 * dt * 0.5,
        g, m1, m2, l1, l2)

    k3_t1, k3_t2, k3_w1, k3_w2 = derivatives_numba(
        theta1 + k2_t1 * dt * 0.5,
        theta2 + k2_t2 * dt * 0.5,
        omega1 + k2_w1 * dt * 0.5,
        omega2 + k2_w2 * dt * 0.5,
        g, m1, m2, l1, l2)

    k4_t1, k4_t2, k4_w1, k4_w2 = derivatives_numba(
        theta1 + k3_t1 * dt,
        theta2 + k3_t2 * dt,
        omega1 + k3_w1 * dt,
        omega2 + k3_w2 * dt,
        g, m1, m2, l1, l2)

    theta1_new = theta1 + (k1_t1 + 2*k2_t1 + 2*k3_t1 + k4_t1) * dt / 6
    theta2_new = theta2 + (k1_t2 + 2*k2_t2 + 2*k3_t2 + k4_t2) * dt / 6
    omega1_new = omega1 + (k1_w1 + 2*k2_w1 + 2*k3_w1 + k4_w1) * dt / 6
    omega2_new = omega2 + (k1_w2 + 2*k2_w2 + 2*k3_w2 + k4_w2) * dt / 6

    return theta1_new, theta2_new, omega1_new, omega2_new

def step(state, params, dt):
    """
    Advance a PendulumState by dt. Returns a new state; a blow-up shows up as
    non-finite values in it.
    """
    return PendulumState(*rk4_step(*(float(v) for v in state.as_tuple()), float(dt),
                                   *(float(p) for p in params.as_tuple())))

##############################################################
## Section 1.4: Time to flip
##############################################################

@njit(error_model='numpy', nogil=True)
def flip_time_numba(theta1_0, theta2_0, dt, max_time, g, m1, m2, l1, l2):
    '''
    Simulated time until either arm has turned by more than pi from its
    starting angle, starting at rest. Returns max_time exactly if that never
    happens before the cutoff. A non-finite state counts as a flip.
    '''
    theta1 = theta1_0
    theta2 = theta2_0
    omega1 = 0.0
    omega2 = 0.0

    t = 0.0
    while t < max_time:
        theta1, theta2, omega1, omega2 = rk4_step(theta1, theta2, omega1, omega2,
                                                  dt, g, m1, m2, l1, l2)

        if not (math.isfinite(theta1) and math.isfinite(theta2)
                and math.isfinite(omega1) and math.isfinite(omega2)):
            return t
        if abs(theta2 - theta2_0) > math.pi:
            return t
        if abs(theta1 - theta1_0) > math.pi:
            return t

        t += dt

    return max_time

@njit(error_model='numpy', nogil=True)
def flip_times_numba(theta1s, theta2s, dt, max_time, g, m1, m2, l1, l2):
    '''
    flip_time_numba over arrays of initial angles. Every entry is independent
    of the others, so any split of the arrays gives the same numbers.
    '''
    n = theta1s.size
    out = np.empty(n)

    for k in range(n):
        out[k] = flip_time_numba(theta1s[k], theta2s[k], dt, max_time, g, m1, m2, l1, l2)

    return out

def time_to_flip(theta1_0, theta2_0, config=None):
    """
    Wrapper for the numba classifier taking a ChaosMapConfig snapshot.
    """
    if config is None:
        config = ChaosMapConfig()

    return flip_time_numba(float(theta1_0), float(theta2_0),
                           float(config.dt), float(config.max_time),
                           *(float(p) for p in config.params.as_tuple()))

def times_to_flip(theta1s, theta2s, config):
    theta1s = np.ascontiguousarray(theta1s, dtype=np.float64).ravel()
    theta2s = np.ascontiguousarray(theta2s, dtype=np.float64).ravel()
    if theta1s.size != theta2s.size:
        raise ValueError("theta1s and theta2s must have the same number of entries")

    return flip_times_numba(theta1s, theta2s,
                            float(config.dt), float(config.max_time),
                            *(float(p) for p in config.params.as_tuple()))

