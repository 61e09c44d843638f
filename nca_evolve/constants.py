"""Neighbourhood, channel layout and thresholds shared by every backend."""

# Von Neumann neighbourhood as (dx, dy). The order is part of the update
# contract: both backends accumulate neighbours in exactly this order.
NHBD = (
              (0, -1),
    (-1, 0),  (0, 0),  (1, 0),
              (0, 1),
)

NHBD_LEN = len(NHBD)
NHBD_CENTER = NHBD_LEN // 2

# Visible channels (read-only or read-write) and hidden channels
VIS_CHS = 4
HID_CHS = 1

INP_CHS = 2 * VIS_CHS + HID_CHS
OUT_CHS = VIS_CHS + HID_CHS

RO_START, RO_END = 0, VIS_CHS
RW_START, RW_END = VIS_CHS, 2 * VIS_CHS
HID_START, HID_END = 2 * VIS_CHS, INP_CHS

INP_DIM = NHBD_LEN * INP_CHS
N_WEIGHTS = INP_DIM * OUT_CHS
N_BIASES = OUT_CHS
N_PARAMS = N_WEIGHTS + N_BIASES

NUM_COLORS = 10

# A neighbour contributes only when its value reaches this level
ALIVE_THRESHOLD = 0.5
# An executor stops once no channel moved by this much in one step
CONVERGENCE_THRESHOLD = 0.25

# Largest grid (in cells) a batched GPU run accepts
GPU_MAX_CELLS = 1024

# Upper bound on colour permutations tried by the augmentation search
MAX_PERMUTATIONS = 1000
