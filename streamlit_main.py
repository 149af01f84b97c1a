import streamlit as st
from streamlit_image_comparison import image_comparison

import avatar

# Session-scoped form state, restored on rerun. The pipeline never reads it.
SESSION_KEYS = {
    "background_mode": "none",
    "scale_percent": avatar.DEFAULT_SCALE_PERCENT,
    "caption_text": "",
    "stroke_enabled": True,
}

MODE_LABELS = {
    "none": "Keep background",
    "light": "Remove light background",
    "dark": "Remove dark background",
}


def load_session_state():
    for key, default in SESSION_KEYS.items():
        if key not in st.session_state:
            st.session_state[key] = default


@st.cache_data
def cached_load(image_bytes) -> avatar.Bitmap:
    return avatar.load_bitmap(image_bytes)


@st.cache_data
def cached_extract(image_bytes, background_mode) -> avatar.Bitmap:
    """Background removal only reruns when the image or the mode changes."""
    return avatar.extract_background(cached_load(image_bytes), background_mode)


@st.cache_data
def cached_render(image_bytes, background_mode, scale_percent, caption_text, stroke_enabled) -> list:
    processed = cached_extract(image_bytes, background_mode)
    params = avatar.FrameParams(scale_percent, caption_text, stroke_enabled)
    return avatar.render_frames(processed, params)


def main():
    """Streamlit UI: upload a 2x2 sprite sheet, tune the frames, download them."""
    st.title("Avatar Sprite Sheet Splitter")
    load_session_state()

    uploaded_image = st.file_uploader("Upload a 2x2 sprite sheet", type=["png", "jpg", "jpeg"])
    if uploaded_image is None:
        st.info("Please upload an image to begin.")
        return

    image_bytes = uploaded_image.getvalue()
    if len(image_bytes) > avatar.MAX_SOURCE_BYTES:
        st.error("Image is larger than 4 MB. Please upload a smaller file.")
        return

    col_mode, col_scale = st.columns(2)
    with col_mode:
        background_mode = st.selectbox(
            "Background",
            options=list(MODE_LABELS),
            format_func=lambda x: MODE_LABELS[x],
            key="background_mode",
        )
    with col_scale:
        scale_percent = st.slider("Scale (%)", min_value=10, max_value=400, step=10, key="scale_percent")

    col_text, col_stroke = st.columns([3, 1])
    with col_text:
        caption_text = st.text_input("Caption", placeholder="Type a caption...", key="caption_text")
    with col_stroke:
        stroke_enabled = st.toggle("Outline", key="stroke_enabled")

    try:
        original = cached_load(image_bytes)
        with st.spinner("Processing frames..."):
            processed = cached_extract(image_bytes, background_mode)
            frames = cached_render(image_bytes, background_mode, scale_percent, caption_text, stroke_enabled)
    except avatar.PipelineError as e:
        st.error(f"Could not process the image: {e}")
        return

    if background_mode != "none":
        image_comparison(
            img1=original.to_image(),
            img2=processed.to_image(),
            label1=f"Original ({original.width}x{original.height})",
            label2="Background removed",
            width=700,
            show_labels=True,
            make_responsive=True,
            in_memory=True,
        )

    st.subheader("Frames")
    st.caption(f"Frame size: {frames[0].bitmap.width} x {frames[0].bitmap.height}")
    grid_cols = st.columns(avatar.GRID.cols)
    for frame in frames:
        with grid_cols[frame.index % avatar.GRID.cols]:
            st.image(frame.bitmap.to_image(), caption=f"Avatar {frame.index + 1}")

    result = avatar.export_frames(frames)
    for failure in result.failures:
        st.warning(f"Could not encode {failure}")

    st.markdown("---")
    st.subheader("Downloads")
    download_cols = st.columns(len(result.files) or 1)
    for col, exported in zip(download_cols, result.files):
        with col:
            st.download_button(
                label=f"Avatar {exported.index + 1}",
                data=exported.data,
                file_name=exported.filename,
                mime=exported.mime,
                key=f"download_{exported.index}",
                type="primary" if exported.index == 0 else "secondary",
            )


if __name__ == "__main__":
    main()
