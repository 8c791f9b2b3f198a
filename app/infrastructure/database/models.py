from sqlalchemy import Column, String, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class CustomizationRecord(Base):
    __tablename__ = "customization"

    product_id = Column(String, primary_key=True)
    original_image_url = Column(String, nullable=False)
    rendered_image_url = Column(String, nullable=False)
    cropped_image_url = Column(String, nullable=False)
    frame_image_url = Column(String)
    transform = Column(JSON, nullable=False)          # {x, y, scale, rotation}
    canvas_dimensions = Column(JSON, nullable=False)  # {width, height}
    created_at = Column(String, nullable=False)       # ISO-8601

    def to_dict(self) -> dict:
        return {
            "originalImageUrl": self.original_image_url,
            "renderedImageUrl": self.rendered_image_url,
            "croppedImageUrl": self.cropped_image_url,
            "frameImageUrl": self.frame_image_url,
            "transform": self.transform,
            "canvasDimensions": self.canvas_dimensions,
            "createdAt": self.created_at,
        }
