"""Last-resort content, used when neither an experiment nor the catalog supplies any."""

from persona_engine.models.schemas.content import ContentModel

# Sections the site knows about, whether or not the catalog has items for them
KNOWN_SECTIONS = (
    "campaign-impact",
    "services",
    "lead-magnet",
    "impact",
    "testimonials",
    "events",
    "donation",
    "student-dashboard",
)

# URL anchors (with aliases) to section keys
SECTION_ANCHOR_MAP = {
    "#services": "services",
    "#impact": "impact",
    "#campaign-impact": "campaign-impact",
    "#testimonials": "testimonials",
    "#events": "events",
    "#donation": "donation",
    "#donate": "donation",
    "#lead-magnet": "lead-magnet",
    "#student-dashboard": "student-dashboard",
    "#dashboard": "student-dashboard",
}

_FALLBACK = ContentModel(
    content_id="default-generic",
    section_key="generic",
    content_type="card",
    title="Learn more about our programs",
    description="Adult education, early childhood and family services for our community.",
    metadata={"primaryButton": "Learn More", "primaryButtonLink": "#services"},
)

DEFAULT_CONTENT = {
    "hero": ContentModel(
        content_id="default-hero",
        section_key="hero",
        content_type="hero",
        title="Education that changes lives",
        description="Free programs for adult learners, parents and families.",
        metadata={"primaryButton": "Get Started", "primaryButtonLink": "#services"},
    ),
    "services": ContentModel(
        content_id="default-services",
        section_key="services",
        content_type="service",
        title="Our Programs",
        description="High school equivalency, preschool and family support programs.",
    ),
    "lead-magnet": ContentModel(
        content_id="default-lead-magnet",
        section_key="lead-magnet",
        content_type="lead_magnet",
        title="Free Program Guide",
        description="Find the right program for you or someone you support.",
        metadata={"primaryButton": "Download the Guide"},
    ),
    "donation": ContentModel(
        content_id="default-donation",
        section_key="donation",
        content_type="cta",
        title="Support our mission",
        description="Every gift helps a learner take the next step.",
        metadata={"primaryButton": "Donate", "primaryButtonLink": "#donation"},
    ),
    "testimonials": ContentModel(
        content_id="default-testimonials",
        section_key="testimonials",
        content_type="testimonial",
        title="Stories from our community",
    ),
}


def default_content_for(section_key: str) -> ContentModel:
    """Hardcoded default for a section. Never returns None."""
    content = DEFAULT_CONTENT.get(section_key)
    if content is None:
        return _FALLBACK.model_copy(update={"section_key": section_key})
    return content.model_copy(deep=True)
