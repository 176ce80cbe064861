"""
CoffeeLeaf - Shared Constants
Disease classes, normalization constants, severity thresholds, symptom
catalogue and treatment text used by the API, the worker and the tests.
"""

# =============================================================================
# Disease Classes
# =============================================================================
# Order matches the output layer of the image and symptom models.
DISEASE_CLASSES = ['Cercospora', 'Healthy', 'Miner', 'Phoma', 'Rust']

HEALTHY = 'Healthy'
MINER = 'Miner'
NOT_COFFEE_LEAF = 'Not Coffee Leaf'

# =============================================================================
# Image Processing Constants
# =============================================================================
IMAGE_SIZE = 224
IMAGE_CHANNELS = 3

# Normalization parameters (ImageNet)
MEAN = [0.485, 0.456, 0.406]
STD = [0.229, 0.224, 0.225]

# =============================================================================
# Model Files and Version Tags
# =============================================================================
MODEL_TYPE_IMAGE = 'cnn'
MODEL_TYPE_SYMPTOM = 'mlp'

MODEL_CONFIG = {
    MODEL_TYPE_IMAGE: 'coffee_resnet50_v1.1.onnx',
    MODEL_TYPE_SYMPTOM: 'coffee_mlp_v1.0.onnx',
}

TAG_ENHANCED = 'enhanced-cv'
TAG_SMART_MOCK = 'smart-mock'
TAG_FALLBACK = 'fallback'
TAG_LEAF_GATE = 'leaf-gate'

MLP_VERSION = 'MLP_v1.0'
MLP_FALLBACK_VERSION = 'MLP_v1.0_FALLBACK'

# Cache namespace used while no image model is loaded
MOCK_NAMESPACE = 'mock'

# =============================================================================
# Severity Levels
# =============================================================================
# (lower bound, label), checked top-down
SEVERITY_THRESHOLDS = [
    (0.9, 'Very High'),
    (0.8, 'High'),
    (0.7, 'Medium'),
    (0.6, 'Low'),
    (0.0, 'Very Low'),
]

SEVERITY_NOT_APPLICABLE = 'Not Applicable'

# =============================================================================
# Symptom Catalogue
# =============================================================================
# Indicator vector width expected by the symptom model. Ids 1..20 map to
# slot id - 1; ids outside that range are ignored.
SYMPTOM_FEATURE_SIZE = 20

SYMPTOMS = {
    1: {'name': 'Brown spots on leaf', 'category': 'Leaf', 'weight': 0.8,
        'disease': 'Cercospora',
        'description': 'Round brown spots appear on the upper leaf surface'},
    2: {'name': 'Leaf yellowing', 'category': 'Leaf', 'weight': 0.6,
        'disease': 'Rust',
        'description': 'Leaves turn abnormally yellow'},
    3: {'name': 'Leaf wilting', 'category': 'Leaf', 'weight': 0.7,
        'disease': 'Phoma',
        'description': 'Leaves wilt and dry out'},
    4: {'name': 'Orange spots under leaf', 'category': 'Leaf', 'weight': 0.9,
        'disease': 'Rust',
        'description': 'Orange powdery spots on the underside of the leaf'},
    5: {'name': 'Tunnels or holes in leaf', 'category': 'Leaf', 'weight': 0.8,
        'disease': 'Miner',
        'description': 'Small holes and mines left by boring larvae'},
    6: {'name': 'Black spots', 'category': 'Leaf', 'weight': 0.7,
        'disease': 'Phoma',
        'description': 'Dark or black lesions on the leaf'},
    7: {'name': 'Scorched leaf edges', 'category': 'Leaf', 'weight': 0.5,
        'disease': 'Miner',
        'description': 'Leaf margins look burnt and dry'},
    8: {'name': 'Curled leaves', 'category': 'Leaf', 'weight': 0.6,
        'disease': 'Phoma',
        'description': 'Leaves curl and become deformed'},
}

# Minimum share every class keeps in the rule-based symptom distribution
SYMPTOM_RULE_FLOOR = 0.1

# Symptoms needed before the symptom classifier is considered reliable
MIN_RELIABLE_SYMPTOMS = 3

# =============================================================================
# Pipeline Weights and Thresholds
# =============================================================================
IMAGE_FUSION_WEIGHT = 0.7
SYMPTOM_FUSION_WEIGHT = 0.3

LEAF_SCORE_THRESHOLD = 0.3
ENHANCE_QUALITY_THRESHOLD = 0.7

ENSEMBLE_MIN_BONUS_MEMBERS = 3
ENSEMBLE_BONUS_SCALE = 0.1
ENSEMBLE_CLAMP = (0.01, 0.99)
ADJUSTED_CLAMP = (0.1, 0.98)

# =============================================================================
# Cache Configuration
# =============================================================================
CACHE_PREFIX = 'pred'
MAX_MEMORY_TTL_SECONDS = 3600
DEFAULT_PREDICTION_TTL_SECONDS = 7 * 24 * 3600

# =============================================================================
# Disease Information
# =============================================================================
DISEASE_INFO = {
    'Cercospora': {
        'description': (
            'Cercospora leaf spot (brown eye spot), caused by Cercospora '
            'coffeicola. Round brown lesions with a pale centre and a yellow '
            'halo, worst on stressed or poorly fed plants.'
        ),
        'treatment': (
            'Apply a copper-based fungicide at 15-20 day intervals, restore '
            'nitrogen and potassium balance, keep moderate shade and remove '
            'heavily spotted leaves.'
        ),
    },
    'Healthy': {
        'description': 'The leaf shows no visible sign of disease or pest damage.',
        'treatment': (
            'No treatment needed. Keep regular fertilization, pruning and '
            'weekly scouting of the plantation.'
        ),
    },
    'Miner': {
        'description': (
            'Coffee leaf miner (Leucoptera coffeella). Larvae feed inside the '
            'leaf and leave irregular brown blotches that dry out and crack.'
        ),
        'treatment': (
            'Collect and destroy mined leaves, conserve parasitic wasps and '
            'apply a registered systemic insecticide only when more than 30% '
            'of leaves are mined.'
        ),
    },
    'Phoma': {
        'description': (
            'Phoma leaf blight (Phoma costarricensis). Dark irregular lesions '
            'at leaf tips and margins, favoured by cold winds and long wet '
            'periods.'
        ),
        'treatment': (
            'Plant windbreaks, prune blighted shoots and spray copper or a '
            'triazole fungicide before cold, wet spells.'
        ),
    },
    'Rust': {
        'description': (
            'Coffee leaf rust (Hemileia vastatrix). Yellow-orange powdery '
            'pustules on the underside of the leaf, leading to early leaf '
            'drop and yield loss.'
        ),
        'treatment': (
            'Spray copper oxychloride or a systemic triazole fungicide at the '
            'start of the rainy season, favour resistant varieties and avoid '
            'nitrogen deficiency.'
        ),
    },
    NOT_COFFEE_LEAF: {
        'description': 'The image does not appear to show a coffee leaf.',
        'treatment': (
            'Retake the photo with a single coffee leaf filling most of the '
            'frame, against a plain background and in even daylight.'
        ),
    },
}

DEFAULT_TREATMENT = (
    'Consult a local agricultural extension officer and remove affected '
    'leaves while the diagnosis is confirmed.'
)

# =============================================================================
# Image Quality Insights
# =============================================================================
QUALITY_INSIGHTS = {
    'too_dark': 'The image is too dark; take the photo in brighter light.',
    'too_bright': 'The image is overexposed; avoid direct sunlight on the leaf.',
    'low_contrast': 'The image has low contrast; use a plain contrasting background.',
    'blurry': 'The image is blurry; hold the camera steady and refocus.',
}

# =============================================================================
# API Response Messages
# =============================================================================
MESSAGES = {
    'PREDICTION_SUCCESS': 'Disease prediction completed successfully',
    'PREDICTION_QUEUED': 'Image queued for processing',
    'PREDICTION_COMPLETED': 'Image processed immediately (queue unavailable)',
    'PREDICTION_FAILED': 'Request failed; resubmit with a new request_id',
    'INVALID_IMAGE': 'Invalid or corrupt image file',
    'NOT_COFFEE_LEAF': 'Image does not appear to be a coffee leaf',
    'UPLOAD_ERROR': 'Error processing uploaded image',
}

# Request status values
STATUS_PROCESSING = 'Processing'
STATUS_COMPLETED = 'Completed'
STATUS_SUCCESS = 'Success'
STATUS_FAILED = 'Failed'

MAX_ERROR_MESSAGE_LENGTH = 500
