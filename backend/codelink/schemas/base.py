"""Base schemas and enums for CodeLink."""

from enum import Enum


class Vocabulary(str, Enum):
    """The two coded vocabularies served by the engine."""

    DIAGNOSIS = "diagnosis"  # ICD-10-CM
    PROCEDURE = "procedure"  # CPT


class SourceKind(str, Enum):
    """Which retrieval path produced a search candidate."""

    LEXICAL = "lexical"
    VECTOR = "vector"
    HYBRID = "hybrid"


class LinkStatus(str, Enum):
    """Validation outcome of a diagnosis/procedure pairing."""

    APPROVED = "approved"
    REJECTED = "rejected"


class RelationshipType(str, Enum):
    """Clinical relationship between a diagnosis and a linked procedure."""

    DIAGNOSTIC = "diagnostic"
    THERAPEUTIC = "therapeutic"
    MONITORING = "monitoring"
    IMAGING = "imaging"
    RELATED = "related"


class RuleCategory(str, Enum):
    """Kind of clinical validation rule."""

    BLOCKING = "blocking"  # Large penalty on domain or anatomy mismatch
    BOOSTING = "boosting"  # Reward for a coherent category match


class AnatomicalTag(str, Enum):
    """Closed set of body-region identifiers.

    Each named bone gets its own tag; clinically distinct bones are
    never grouped under a shared region.
    """

    # Head and neck
    SKULL = "skull"
    MANDIBLE = "mandible"
    MAXILLA = "maxilla"
    FACE = "face"
    NECK = "neck"

    # Upper extremity
    SHOULDER = "shoulder"
    CLAVICLE = "clavicle"
    SCAPULA = "scapula"
    HUMERUS = "humerus"
    ELBOW = "elbow"
    RADIUS = "radius"
    ULNA = "ulna"
    FOREARM = "forearm"
    WRIST = "wrist"
    HAND = "hand"

    # Lower extremity
    HIP = "hip"
    FEMUR = "femur"
    KNEE = "knee"
    TIBIA = "tibia"
    FIBULA = "fibula"
    ANKLE = "ankle"
    FOOT = "foot"

    # Spine
    SPINE = "spine"
    CERVICAL = "cervical"
    THORACIC = "thoracic"
    LUMBAR = "lumbar"

    # Trunk
    CHEST = "chest"
    ABDOMEN = "abdomen"
    PELVIS = "pelvis"

    # Organs
    HEART = "heart"
    LUNG = "lung"
    LIVER = "liver"
    KIDNEY = "kidney"
    BRAIN = "brain"
