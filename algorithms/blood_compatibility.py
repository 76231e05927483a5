"""
Blood Type Compatibility Helper
Fixed ABO/Rh lookup table deciding which donor blood types can give to
which recipient blood types, plus the graded match quality used for ranking
"""

# Donor type -> recipient types it can give to
COMPATIBILITY = {
    'O-': ('O-', 'O+', 'A-', 'A+', 'B-', 'B+', 'AB-', 'AB+'),  # Universal donor
    'O+': ('O+', 'A+', 'B+', 'AB+'),
    'A-': ('A-', 'A+', 'AB-', 'AB+'),
    'A+': ('A+', 'AB+'),
    'B-': ('B-', 'B+', 'AB-', 'AB+'),
    'B+': ('B+', 'AB+'),
    'AB-': ('AB-', 'AB+'),
    'AB+': ('AB+',),  # Universal recipient
}

EXACT_MATCH_SCORE = 1.0
COMPATIBLE_MATCH_SCORE = 0.8


def is_compatible(donor_blood_type, recipient_blood_type):
    """
    Check if donor blood type is compatible with recipient

    Args:
        donor_blood_type: Donor's blood type (e.g., 'O+')
        recipient_blood_type: Recipient's blood type (e.g., 'A+')

    Returns:
        Boolean: True if compatible, False otherwise
    """
    return str(recipient_blood_type) in COMPATIBILITY.get(str(donor_blood_type), ())


def get_compatible_donors(recipient_blood_type):
    """
    Get list of blood types that can donate to recipient

    Args:
        recipient_blood_type: Recipient's blood type

    Returns:
        List of compatible donor blood types
    """
    recipient_blood_type = str(recipient_blood_type)
    return [
        donor_type for donor_type, recipients in COMPATIBILITY.items()
        if recipient_blood_type in recipients
    ]


def get_compatible_recipients(donor_blood_type):
    """
    Get list of blood types that can receive from donor

    Args:
        donor_blood_type: Donor's blood type

    Returns:
        List of compatible recipient blood types
    """
    return list(COMPATIBILITY.get(str(donor_blood_type), ()))


def compatibility_score(donor_blood_type, recipient_blood_type):
    """
    Score blood compatibility (0-1)
    1.0 = exact match, 0.8 = compatible, 0 = incompatible
    """
    if not is_compatible(donor_blood_type, recipient_blood_type):
        return 0.0
    if str(donor_blood_type) == str(recipient_blood_type):
        return EXACT_MATCH_SCORE
    return COMPATIBLE_MATCH_SCORE
