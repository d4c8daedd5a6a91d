import numpy as np
import cv2
import argparse
# -------- my imports --------
from sklearn.cluster import KMeans
from gmm import GMM, COMPONENTS_COUNT
from igraph import Graph
import time


GC_BGD = 0  # Hard bg pixel
GC_FGD = 1  # Hard fg pixel
GC_PR_BGD = 2  # Soft bg pixel
GC_PR_FGD = 3  # Soft fg pixel

GC_INIT_WITH_RECT = 0
GC_INIT_WITH_MASK = 1
GC_EVAL = 2

GAMMA = 50
# (row, col) offset and euclidean distance of the neighbors each pixel links to
NEIGHBOR_OFFSETS = [
    (1, 0, 1.0),  # below
    (0, 1, 1.0),  # right
    (1, -1, np.sqrt(2)),  # down left diagonal
    (1, 1, np.sqrt(2)),  # down right diagonal
]


def _shifted_pairs(image, d_row, d_col):
    # the pixel block and its neighbor block for a (d_row, d_col) offset, d_row >= 0
    rows, cols = image.shape[:2]
    col_start, col_stop = max(0, -d_col), cols - max(0, d_col)
    here = image[:rows - d_row, col_start:col_stop]
    there = image[d_row:, col_start + d_col:col_stop + d_col]
    return here, there


def calculate_beta(image):
    image = image.astype(np.float64)
    sum_of_diffs = 0.0
    total_elements = 0
    for d_row, d_col, _ in NEIGHBOR_OFFSETS:
        here, there = _shifted_pairs(image, d_row, d_col)
        diff = here - there
        sum_of_diffs += (diff ** 2).sum()
        total_elements += diff.shape[0] * diff.shape[1]

    # flat image - no color edges at all
    if sum_of_diffs <= np.finfo(np.float64).eps or total_elements == 0:
        return 0.0

    beta = 1 / (2 * sum_of_diffs / total_elements)
    return beta


# Translation from each vertex index to pixel location in img (x,y) for identification
def vid_to_img_coordinates(single_row_size, vid):
    x = vid // single_row_size
    y = np.mod(vid, single_row_size)
    return x, y


# Translation from location in img (x,y) to pixel vertex index for identification
def pixel_coords_to_vid(single_row_size, x, y):
    return (x * single_row_size) + y


def create_n_links(image, beta, gamma=GAMMA):
    """
    Build the smoothness edges between every pixel and its lower / right neighbors.

    Returns the (E, 2) edge array, the (E,) weights and the largest sum of
    n-link weights over a single pixel, used as the hard constraint capacity.
    """
    image = image.astype(np.float64)
    num_of_rows, num_of_cols = image.shape[:2]
    vids = pixel_coords_to_vid(num_of_cols, *np.indices((num_of_rows, num_of_cols)))

    weights_matrix = np.zeros((num_of_rows, num_of_cols))
    all_edges = []
    all_weights = []
    for d_row, d_col, euclidean_dist in NEIGHBOR_OFFSETS:
        here, there = _shifted_pairs(image, d_row, d_col)
        if here.size == 0:
            continue
        color_diff_squared = ((here - there) ** 2).sum(axis=2)
        weights = (gamma / euclidean_dist) * np.exp(-beta * color_diff_squared)

        here_vids, there_vids = _shifted_pairs(vids, d_row, d_col)
        all_edges.append(np.stack([here_vids.ravel(), there_vids.ravel()], axis=1))
        all_weights.append(weights.ravel())

        here_w, there_w = _shifted_pairs(weights_matrix, d_row, d_col)
        here_w += weights
        there_w += weights

    if not all_edges:
        return np.zeros((0, 2), dtype=np.int64), np.zeros(0), 0.0

    return np.concatenate(all_edges), np.concatenate(all_weights), float(np.max(weights_matrix))


def bg_pixels_mask(mask):
    return (mask == GC_BGD) | (mask == GC_PR_BGD)


def has_both_sides(mask):
    bg = bg_pixels_mask(mask)
    return bool(bg.any()) and not bool(bg.all())


def check_mask_sides(mask):
    # each color model needs at least one pixel to learn from
    if not has_both_sides(mask):
        raise ValueError("mask must contain both background and foreground pixels")


def initialize_gmm_of_pixels(pixels, gmm):
    # Start every component from a KMeans cluster of the pixels
    n_clusters = min(gmm.n_components, len(pixels))
    k_means = KMeans(n_clusters=n_clusters, n_init=10, random_state=0)
    k_means.fit(pixels)

    gmm.init_learning()
    gmm.add_samples(k_means.labels_, pixels)
    gmm.end_learning()


def initialize_GMMs(img, mask, bgGMM, fgGMM):
    # every gaussian holds:
    # µ – the mean (an RGB triple)
    # Σ^(−1) – the inverse of the covariance matrix (a 3x3 matrix)
    # detΣ – the determinant of the covariance matrix (a real)
    # π – a component weight (a real)
    check_mask_sides(mask)
    bg = bg_pixels_mask(mask)
    bg_pixels = img[bg].astype(np.float64)
    fg_pixels = img[~bg].astype(np.float64)

    initialize_gmm_of_pixels(bg_pixels, bgGMM)
    initialize_gmm_of_pixels(fg_pixels, fgGMM)


def assign_GMMs_components(img, mask, bgGMM, fgGMM):
    # Most likely component of each pixel, under the GMM of its current side
    bg = bg_pixels_mask(mask)
    comp_idxs = np.zeros(mask.shape, dtype=np.intp)
    comp_idxs[bg] = bgGMM.which_components(img[bg])
    comp_idxs[~bg] = fgGMM.which_components(img[~bg])
    return comp_idxs


def learn_GMMs(img, mask, comp_idxs, bgGMM, fgGMM):
    check_mask_sides(mask)
    bg = bg_pixels_mask(mask)
    for gmm, side in ((bgGMM, bg), (fgGMM, ~bg)):
        gmm.init_learning()
        gmm.add_samples(comp_idxs[side], img[side])
        gmm.end_learning()


# Define helper functions for the GrabCut algorithm
def update_GMMs(img, mask, bgGMM, fgGMM):
    comp_idxs = assign_GMMs_components(img, mask, bgGMM, fgGMM)
    learn_GMMs(img, mask, comp_idxs, bgGMM, fgGMM)
    return bgGMM, fgGMM


def data_energy(gmm, pixels):
    densities = gmm.mixture_densities(pixels)
    # a zero density would be an infinite capacity
    return -np.log(np.maximum(densities, np.finfo(np.float64).tiny))


def calculate_mincut(img, mask, bgGMM, fgGMM, n_edges, n_weights, hard_capacity):
    num_of_rows, num_of_cols = img.shape[:2]
    num_pixels = num_of_rows * num_of_cols
    fg_source = num_pixels
    bg_sink = num_pixels + 1

    graph = Graph(directed=True)
    graph.add_vertices(num_pixels + 2)  # includes source and sink

    pixels = img.reshape((-1, img.shape[-1])).astype(np.float64)
    flat_mask = mask.ravel()
    fg_energy = data_energy(fgGMM, pixels)
    bg_energy = data_energy(bgGMM, pixels)

    # densities are not normalized, so -log can go negative; only the difference of the two t-links matters
    shift = np.minimum(fg_energy, bg_energy)

    # cutting source->p puts p in the background, cutting p->sink puts it in the foreground
    source_caps = bg_energy - shift
    sink_caps = fg_energy - shift
    source_caps[flat_mask == GC_BGD] = 0
    sink_caps[flat_mask == GC_BGD] = hard_capacity
    source_caps[flat_mask == GC_FGD] = hard_capacity
    sink_caps[flat_mask == GC_FGD] = 0

    vids = np.arange(num_pixels)
    t_edges = np.concatenate([
        np.stack([np.full(num_pixels, fg_source), vids], axis=1),
        np.stack([vids, np.full(num_pixels, bg_sink)], axis=1),
    ])

    # N-links go both ways
    edges = np.concatenate([n_edges, n_edges[:, ::-1], t_edges])
    capacities = np.concatenate([n_weights, n_weights, source_caps, sink_caps])

    graph.add_edges(edges.tolist())
    graph.es['capacity'] = capacities.tolist()

    # Calculate min-cut
    min_cut_result = graph.mincut(fg_source, bg_sink, capacity='capacity')
    fg_vertices, bg_vertices = min_cut_result.partition

    if fg_source not in fg_vertices:
        fg_vertices, bg_vertices = bg_vertices, fg_vertices

    # Return partitions and the cut value (energy of the cut)
    return [fg_vertices, bg_vertices], min_cut_result.value


def update_mask(mincut_sets, mask):
    single_row_size = mask.shape[1]
    num_pixels = mask.size

    fg_vids = np.array([vid for vid in mincut_sets[0] if vid < num_pixels], dtype=np.intp)
    bg_vids = np.array([vid for vid in mincut_sets[1] if vid < num_pixels], dtype=np.intp)

    probable = (mask == GC_PR_BGD) | (mask == GC_PR_FGD)
    new_mask = mask.copy()

    # hard labels from the user are never changed
    for vids, label in ((fg_vids, GC_PR_FGD), (bg_vids, GC_PR_BGD)):
        if len(vids) == 0:
            continue
        xs, ys = vid_to_img_coordinates(single_row_size, vids)
        keep = probable[xs, ys]
        new_mask[xs[keep], ys[keep]] = label

    return new_mask


def check_convergence(energy, old_energy, tol=1e-3):
    return old_energy is not None and np.abs(energy - old_energy) < tol


def rect_from_corners(corners):
    # course bbox files hold "x1 y1 x2 y2"
    x1, y1, x2, y2 = corners
    return x1, y1, x2 - x1, y2 - y1


def init_mask_with_rect(shape, rect):
    mask = np.full(shape, GC_BGD, dtype=np.uint8)
    x, y, w, h = rect
    x, y = max(0, x), max(0, y)
    w, h = min(w, shape[1] - x), min(h, shape[0] - y)
    if w <= 0 or h <= 0:
        raise ValueError(f"rect {rect} does not intersect the image")
    mask[y:y + h, x:x + w] = GC_PR_FGD
    return mask


# Define the GrabCut algorithm function
def grabcut(img, rect=None, mask=None, bgd_model=None, fgd_model=None, n_iter=5, mode=GC_INIT_WITH_RECT,
            n_components=COMPONENTS_COUNT):
    """
    Segment `img` into foreground and background.

    Returns the final mask (GC_* labels) and the background / foreground
    models as flat parameter buffers. Passing the buffers back with
    mode=GC_EVAL continues from those models instead of re-initializing.
    """
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError("img must be a 3 channel image")
    img = img.astype(np.float64)

    if mode == GC_INIT_WITH_RECT:
        if rect is None:
            raise ValueError("rect is required with GC_INIT_WITH_RECT")
        mask = init_mask_with_rect(img.shape[:2], rect)
    elif mask is None or mask.shape != img.shape[:2]:
        raise ValueError("mask with the image's height and width is required")
    else:
        mask = mask.astype(np.uint8).copy()
    check_mask_sides(mask)

    if mode == GC_EVAL:
        if bgd_model is None or fgd_model is None:
            raise ValueError("bgd_model and fgd_model are required with GC_EVAL")
        bgGMM = GMM(bgd_model, n_components)
        fgGMM = GMM(fgd_model, n_components)
    else:
        bgGMM = GMM(n_components=n_components)
        fgGMM = GMM(n_components=n_components)
        initialize_GMMs(img, mask, bgGMM, fgGMM)

    beta = calculate_beta(img)
    print(f"the value of beta is: {beta}")
    n_edges, n_weights, max_vertex_n_weights = create_n_links(img, beta)
    # a hard constraint must cost more than any smoothness cut around a pixel
    hard_capacity = max_vertex_n_weights + 1

    old_energy = None
    for i in range(n_iter):
        # the last cut may have moved every probable pixel to one side
        if not has_both_sides(mask):
            print(f"############ Iteration {i} - one side of the mask is empty, stopping ############")
            break

        # Update GMM
        bgGMM, fgGMM = update_GMMs(img, mask, bgGMM, fgGMM)

        mincut_sets, energy = calculate_mincut(img, mask, bgGMM, fgGMM, n_edges, n_weights, hard_capacity)

        mask = update_mask(mincut_sets, mask)

        print(f"############ Iteration {i} - Energy value: {energy} ############")
        if check_convergence(energy, old_energy):
            break

        old_energy = energy

    if mode != GC_EVAL:
        bgd_model = fgd_model = None
    # in GC_EVAL the caller's buffers are updated in place
    return mask, bgGMM.to_buffer(bgd_model), fgGMM.to_buffer(fgd_model)


def binary_mask(mask):
    return np.where((mask == GC_FGD) | (mask == GC_PR_FGD), 1, 0).astype(np.uint8)


def cal_metric(predicted_mask, gt_mask):
    correct_pixels_amount = np.count_nonzero(predicted_mask == gt_mask)
    accuracy = correct_pixels_amount / predicted_mask.size

    intersection = np.logical_and(predicted_mask, gt_mask)
    union = np.logical_or(predicted_mask, gt_mask)
    if not np.any(union):
        return accuracy, 1.0
    jaccard_similarity = np.sum(intersection) / np.sum(union)

    return accuracy, jaccard_similarity


def parse():
    parser = argparse.ArgumentParser()
    parser.add_argument('--input_name', type=str, default='banana1', help='name of image from the course files')
    parser.add_argument('--eval', type=int, default=1, help='calculate the metrics')
    parser.add_argument('--input_img_path', type=str, default='', help='if you wish to use your own img_path')
    parser.add_argument('--use_file_rect', type=int, default=1, help='Read rect from course files')
    parser.add_argument('--rect', type=str, default='1,1,100,100', help='if you wish change the rect (x,y,w,h')
    parser.add_argument('--n_iter', type=int, default=5, help='maximal number of grabcut iterations')
    parser.add_argument('--n_components', type=int, default=COMPONENTS_COUNT, help='gaussians per color model')
    return parser.parse_args()


if __name__ == '__main__':
    start_time = time.time()
    # Load an example image and define a bounding box around the object of interest
    args = parse()

    if args.input_img_path == '':
        input_path = f'data/imgs/{args.input_name}.jpg'
    else:
        input_path = args.input_img_path

    if args.use_file_rect:
        with open(f"data/bboxes/{args.input_name}.txt", "r") as f:
            rect = rect_from_corners(map(int, f.read().split()))
    else:
        rect = tuple(map(int, args.rect.split(',')))

    img = cv2.imread(input_path)
    if img is None:
        raise SystemExit(f"could not read image {input_path}")

    # Run the GrabCut algorithm on the image and bounding box
    mask, bgd_model, fgd_model = grabcut(img, rect, n_iter=args.n_iter, n_components=args.n_components)
    mask = binary_mask(mask)

    # Print metrics only if requested (valid only for course files)
    if args.eval:
        gt_mask = cv2.imread(f'data/seg_GT/{args.input_name}.bmp', cv2.IMREAD_GRAYSCALE)
        gt_mask = cv2.threshold(gt_mask, 0, 1, cv2.THRESH_BINARY)[1]
        acc, jac = cal_metric(mask, gt_mask)
        print(f'Accuracy={acc}, Jaccard={jac}')
    print("--- %s seconds ---" % (time.time() - start_time))

    # Apply the final mask to the input image and display the results
    img_cut = img * (mask[:, :, np.newaxis])
    cv2.imshow('Original Image', img)
    cv2.imshow('GrabCut Mask', 255 * mask)
    cv2.imshow('GrabCut Result', img_cut)
    cv2.waitKey(0)
    cv2.destroyAllWindows()
