from __future__ import annotations

import io

import pytest
from PIL import Image

from moon_model import (
    Bundle,
    CubeData,
    Face,
    MeshData,
    Metadata,
    ModelPart,
    ParentType,
    TextureData,
    Textures,
)


def png_bytes(width: int = 16, height: int = 16, color=(255, 0, 0, 255)) -> bytes:
    buff = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buff, format="PNG")
    return buff.getvalue()


def cube(name: str, piv=(0.0, 0.0, 0.0), tex: int = 0, **kwargs) -> ModelPart:
    return ModelPart(
        name=name,
        piv=piv,
        data=CubeData(
            faces={"u": Face(tex=tex, uv=(0.0, 0.0, 16.0, 16.0))},
            f=(0.0, 0.0, 0.0),
            t=(1.0, 1.0, 1.0),
        ),
        **kwargs,
    )


def quad_mesh(name: str = "plane", tex: int = 0) -> ModelPart:
    return ModelPart(
        name=name,
        data=MeshData(
            vtx=[0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 1.0, 0.0, 1.0, 0.0, 0.0, 1.0],
            tex=[(tex << 4) | 4],
            fac=[0, 1, 2, 3],
            uvs=[0.0, 0.0, 16.0, 0.0, 16.0, 16.0, 0.0, 16.0],
        ),
    )


@pytest.fixture
def png():
    return png_bytes()


@pytest.fixture
def simple_bundle(png) -> Bundle:
    root = ModelPart(
        name="models",
        children=[
            ModelPart(
                name="model",
                piv=(0.0, 8.0, 0.0),
                rot=(0.0, 45.0, 0.0),
                pt=ParentType.Head,
                children=[cube("box"), quad_mesh("plane")],
            )
        ],
    )
    return Bundle(
        textures=Textures(src={"model.skin": png}, data=[TextureData("model.skin")]),
        scripts={"script": b"print('hello')"},
        models=root,
        metadata=Metadata(name="Test", description="A test avatar", authors=["alice"], ver="0.1.4"),
    )
