# Palette de couleurs par défaut pour les segments (indices numériques).
# L'index 0 est réservé au fond ("no label") et reste transparent.
# Couleurs au format RGBA, alpha sur [0, 255].
BASE_SEGMENT_COLORS_RGBA = [
    [0, 0, 0, 0],
    [221, 84, 84, 255],
    [77, 228, 121, 255],
    [166, 70, 235, 255],
    [189, 180, 116, 255],
    [109, 182, 196, 255],
    [204, 101, 157, 255],
    [123, 211, 94, 255],
    [93, 87, 218, 255],
    [225, 128, 80, 255],
    [73, 232, 172, 255],
    [181, 119, 186, 255],
    [176, 193, 73, 255],
    [105, 153, 200, 255],
    [240, 85, 160, 255],
    [143, 217, 67, 255],
]

COLOR_LUT_SIZE = 256

# LUT complète : les couleurs de base sont recyclées au-delà de l'index 15.
DEFAULT_COLOR_LUT = [
    list(BASE_SEGMENT_COLORS_RGBA[i])
    if i < len(BASE_SEGMENT_COLORS_RGBA)
    else list(BASE_SEGMENT_COLORS_RGBA[1 + (i - 1) % (len(BASE_SEGMENT_COLORS_RGBA) - 1)])
    for i in range(COLOR_LUT_SIZE)
]

MAX_ALPHA = 255.0

# Segment index 0 is "background / no label".
BACKGROUND_SEGMENT_INDEX = 0

DEFAULT_SEGMENTATION_LABEL = "Segmentation"

# Absolute tolerance when snapping a segment's first slice onto the reference grid.
SLICE_ALIGNMENT_TOLERANCE = 1e-4

# Derived labelmap buffers are stored as uint8 (segment indices 0..255).
DEFAULT_LABELMAP_BUFFER_KIND = "uint8"

# Labelmap render options stored under representations[LABELMAP] in the engine config.
LABELMAP_CONFIG_KEYS = (
    "render_outline",
    "outline_width_active",
    "outline_width_inactive",
    "render_fill",
    "fill_alpha",
    "fill_alpha_inactive",
)

# Options accepted by SegmentationService.set_configuration.
CONFIGURATION_OPTIONS = (
    "render_outline",
    "outline_width_active",
    "render_fill",
    "fill_alpha",
    "fill_alpha_inactive",
    "render_inactive_segmentations",
    "brush_size",
    "brush_threshold_gate",
)

DEFAULT_LABELMAP_CONFIG = {
    "render_outline": True,
    "outline_width_active": 3,
    "outline_width_inactive": 2,
    "render_fill": True,
    "fill_alpha": 0.7,
    "fill_alpha_inactive": 0.5,
}

DEFAULT_BRUSH_SIZE = 25
DEFAULT_BRUSH_THRESHOLD_GATE = None
